import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .db import unit_of_work
from .errors import InvariantViolation
from .models import SequenceCounter, utcnow

logger = logging.getLogger(__name__)

ACCESSION_PREFIX = "accession"


def accession_counter_name(year):
    return f"{ACCESSION_PREFIX}-{year}"


def format_accession_id(year, value):
    return f"{year}-{value:04d}"


class SequenceGenerator:
    """
    Gapless, per-name counters backed by the sequence_counter table.

    Each call is a single conditional UPDATE ... RETURNING, so the row lock
    taken by the update is what orders concurrent callers. There is no
    read-then-write and no fallback value: if the store fails, the caller
    gets the error.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def next_value(self, counter_name, session=None):
        # With a caller session the increment commits or rolls back with the
        # caller's work, so an aborted insert never burns a number.
        if session is not None:
            return self._increment(session, counter_name)
        with unit_of_work(self._session_factory) as own:
            return self._increment(own, counter_name)

    def next_accession_id(self, year=None, session=None):
        year = year or utcnow().year
        value = self.next_value(accession_counter_name(year), session=session)
        return format_accession_id(year, value)

    def current_value(self, counter_name):
        with unit_of_work(self._session_factory) as session:
            value = session.execute(
                select(SequenceCounter.value).where(SequenceCounter.name == counter_name)
            ).scalar_one_or_none()
            return value or 0

    def reset(self, counter_name, value=0):
        """Administrative reset; not part of any circulation path."""
        if value < 0:
            raise ValueError("counter value cannot be negative")
        with unit_of_work(self._session_factory) as session:
            counter = session.execute(
                select(SequenceCounter)
                .where(SequenceCounter.name == counter_name)
                .with_for_update()
            ).scalar_one_or_none()
            if counter is None:
                session.add(SequenceCounter(name=counter_name, value=value))
            else:
                counter.value = value
        logger.warning("Counter %s reset to %d", counter_name, value)

    # ----------------- internals -----------------

    def _increment(self, session, counter_name):
        value = self._bump(session, counter_name)
        if value is None:
            self._create_counter(session, counter_name)
            value = self._bump(session, counter_name)
        if value is None or value < 1:
            raise InvariantViolation(
                f"Counter {counter_name} could not be incremented", counter=counter_name
            )
        logger.debug("Counter %s -> %d", counter_name, value)
        return value

    def _bump(self, session, counter_name):
        stmt = (
            update(SequenceCounter)
            .where(SequenceCounter.name == counter_name)
            .values(value=SequenceCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if session.get_bind().dialect.update_returning:
            return session.execute(stmt.returning(SequenceCounter.value)).scalar_one_or_none()

        # No RETURNING: the update's row lock is held until commit, so the
        # read-back in the same transaction still sees our own increment.
        result = session.execute(stmt)
        if result.rowcount == 0:
            return None
        return session.execute(
            select(SequenceCounter.value).where(SequenceCounter.name == counter_name)
        ).scalar_one()

    def _create_counter(self, session, counter_name):
        try:
            with session.begin_nested():
                session.add(SequenceCounter(name=counter_name, value=0))
        except IntegrityError:
            # another caller created it first; the retried update will find it
            logger.debug("Counter %s already created concurrently", counter_name)
        else:
            logger.info("Created counter %s", counter_name)
