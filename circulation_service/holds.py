import logging
from datetime import timedelta

from sqlalchemy import func, select

from .errors import Conflict, InvalidTransition, InvariantViolation, NotFound
from .models import OPEN_HOLD_STATES, Hold, HoldState, utcnow
from .notifications import enqueue
from .transactions import count_unpicked_reservations, find_open_borrow, find_open_hold

logger = logging.getLogger(__name__)


def count_holds(session, book_id, state):
    return session.execute(
        select(func.count(Hold.id)).where(Hold.book_id == book_id, Hold.state == state)
    ).scalar_one()


def claimed_copies(session, book_id):
    """Copies promised to someone: ready holds plus approved, unpicked reservations."""
    return count_holds(session, book_id, HoldState.READY) + count_unpicked_reservations(
        session, book_id
    )


class HoldQueueManager:
    """
    Per-book waitlist. Every change to a book's active set runs while the
    book row is locked, so reindexing is serialized per book and the active
    queue positions are always exactly 1..N.
    """

    def __init__(self, ledger, config, clock=utcnow):
        self.ledger = ledger
        self.hold_expiry = timedelta(days=config.HOLD_EXPIRY_DAYS)
        self.pickup_window = timedelta(days=config.HOLD_PICKUP_DAYS)
        self.clock = clock

    def place_hold(self, session, book_id, subject_id):
        book = self.ledger.lock_book(session, book_id)

        existing = find_open_hold(session, book_id, subject_id)
        if existing is not None:
            raise Conflict(
                "You already have a hold on this book",
                hold_id=existing.id,
                position=existing.queue_position,
            )

        borrow = find_open_borrow(session, book_id, subject_id)
        if borrow is not None:
            raise Conflict(
                "You cannot place a hold on a book you already borrowed. Return the book first.",
                transaction_id=borrow.id,
            )

        active = self.check_queue(session, book_id)
        now = self.clock()
        hold = Hold(
            book_id=book_id,
            subject_id=subject_id,
            state=HoldState.ACTIVE,
            queue_position=len(active) + 1,
            placed_at=now,
            expires_at=now + self.hold_expiry,
        )
        session.add(hold)
        session.flush()
        enqueue(
            session,
            subject_id,
            "hold_placed",
            {"book_title": book.title, "queue_position": hold.queue_position},
        )
        logger.info(
            "Hold %s placed by %s on book %s at position %d",
            hold.id,
            subject_id,
            book_id,
            hold.queue_position,
        )
        return hold

    def cancel_hold(self, session, hold_id, reason=None):
        """Returns (hold, was_ready)."""
        hold = self._lock_with_book(session, hold_id)
        if hold.state not in OPEN_HOLD_STATES:
            raise InvalidTransition(
                f"Hold {hold.id} is {hold.state.value} and cannot be cancelled",
                hold_id=hold.id,
                state=hold.state.value,
            )

        was_ready = hold.state == HoldState.READY
        hold.state = HoldState.CANCELLED
        hold.queue_position = None
        hold.cancelled_at = self.clock()
        hold.cancelled_reason = reason or "User cancelled"
        self.reindex(session, hold.book_id)
        logger.info("Hold %s cancelled (%s)", hold.id, hold.cancelled_reason)
        return hold, was_ready

    def fulfill_next(self, session, book_id):
        """
        Promote the head of the queue to ready if a copy is free and not
        already promised. Returns the promoted hold, or None (no-op).
        """
        book = self.ledger.lock_book(session, book_id)
        if self.unclaimed_copies(session, book_id) <= 0:
            logger.debug("No unclaimed copy of book %s; nothing to fulfill", book_id)
            return None

        hold = session.execute(
            select(Hold)
            .where(Hold.book_id == book_id, Hold.state == HoldState.ACTIVE)
            .order_by(Hold.queue_position, Hold.placed_at, Hold.id)
            .limit(1)
        ).scalars().first()
        if hold is None:
            return None

        now = self.clock()
        hold.state = HoldState.READY
        hold.queue_position = None
        hold.ready_at = now
        hold.expires_at = now + self.pickup_window
        self.reindex(session, book_id)
        enqueue(
            session,
            hold.subject_id,
            "hold_ready",
            {
                "book_title": book.title,
                "placed_at": hold.placed_at.isoformat(),
                "pickup_by": hold.expires_at.isoformat(),
            },
        )
        logger.info("Hold %s for %s is ready for pickup", hold.id, hold.subject_id)
        return hold

    def mark_picked_up(self, session, hold_id):
        hold = self._lock_with_book(session, hold_id)
        if hold.state != HoldState.READY:
            raise InvalidTransition(
                f"Hold {hold.id} is {hold.state.value}, not ready for pickup",
                hold_id=hold.id,
                state=hold.state.value,
            )
        hold.state = HoldState.FULFILLED
        hold.picked_up_at = self.clock()
        self.reindex(session, hold.book_id)
        logger.info("Hold %s picked up by %s", hold.id, hold.subject_id)
        return hold

    def expire_stale(self, session, now=None):
        """
        Expire every active/ready hold past expires_at. Returns one entry per
        affected book: {"book_id", "expired", "ready_expired"}.
        """
        now = now or self.clock()
        book_ids = session.execute(
            select(Hold.book_id)
            .where(Hold.state.in_(OPEN_HOLD_STATES), Hold.expires_at < now)
            .distinct()
        ).scalars().all()

        summary = []
        # ascending id order keeps lock acquisition consistent across callers
        for book_id in sorted(book_ids):
            book = self.ledger.lock_book(session, book_id)
            stale = session.execute(
                select(Hold).where(
                    Hold.book_id == book_id,
                    Hold.state.in_(OPEN_HOLD_STATES),
                    Hold.expires_at < now,
                )
            ).scalars().all()
            if not stale:
                continue

            ready_expired = 0
            for hold in stale:
                if hold.state == HoldState.READY:
                    ready_expired += 1
                hold.state = HoldState.EXPIRED
                hold.queue_position = None
                hold.cancelled_at = now
                hold.cancelled_reason = "Hold expired"
                enqueue(session, hold.subject_id, "hold_expired", {"book_title": book.title})
            self.reindex(session, book_id)
            summary.append(
                {"book_id": book_id, "expired": len(stale), "ready_expired": ready_expired}
            )

        if summary:
            logger.info(
                "Expired %d holds across %d books",
                sum(s["expired"] for s in summary),
                len(summary),
            )
        return summary

    def reindex(self, session, book_id):
        """Renumber the active holds of a book to 1..N by placed_at."""
        self.ledger.lock_book(session, book_id)
        session.flush()
        active = session.execute(
            select(Hold)
            .where(Hold.book_id == book_id, Hold.state == HoldState.ACTIVE)
            .order_by(Hold.placed_at, Hold.id)
        ).scalars().all()
        for index, hold in enumerate(active):
            hold.queue_position = index + 1
        session.flush()
        logger.debug("Reindexed %d holds for book %s", len(active), book_id)
        return active

    def check_queue(self, session, book_id):
        """Return the active holds in order, or raise if positions are not 1..N."""
        active = self.queue_for_book(session, book_id)
        positions = [h.queue_position for h in active]
        if positions != list(range(1, len(active) + 1)):
            raise InvariantViolation(
                f"Hold queue for book {book_id} is not contiguous: {positions}",
                book_id=book_id,
            )
        return active

    def queue_for_book(self, session, book_id):
        return session.execute(
            select(Hold)
            .where(Hold.book_id == book_id, Hold.state == HoldState.ACTIVE)
            .order_by(Hold.queue_position, Hold.placed_at, Hold.id)
        ).scalars().all()

    def position(self, session, book_id, subject_id):
        hold = session.execute(
            select(Hold).where(
                Hold.book_id == book_id,
                Hold.subject_id == subject_id,
                Hold.state == HoldState.ACTIVE,
            )
        ).scalars().first()
        if hold is None:
            raise NotFound("Hold not found", book_id=book_id, subject_id=subject_id)
        total = count_holds(session, book_id, HoldState.ACTIVE)
        return hold, total

    def list_for_subject(self, session, subject_id, state=None):
        q = select(Hold).where(Hold.subject_id == subject_id)
        if state is not None:
            q = q.where(Hold.state == state)
        return session.execute(q.order_by(Hold.placed_at)).scalars().all()

    def get(self, session, hold_id, lock=False):
        q = select(Hold).where(Hold.id == hold_id)
        if lock:
            q = q.with_for_update().execution_options(populate_existing=True)
        hold = session.execute(q).scalar_one_or_none()
        if hold is None:
            raise NotFound(f"Hold {hold_id} not found", hold_id=hold_id)
        return hold

    def unclaimed_copies(self, session, book_id):
        """Copies on the shelf that no ready hold or approved reservation has promised."""
        book = self.ledger.get_book(session, book_id)
        return book.available_copies - claimed_copies(session, book_id)

    def _lock_with_book(self, session, hold_id):
        # book row first, then the hold: the same order fulfill_next and
        # expire_stale take, so the two paths cannot deadlock
        hold = self.get(session, hold_id)
        self.ledger.lock_book(session, hold.book_id)
        return self.get(session, hold_id, lock=True)
