import logging
import math
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeout
from sqlalchemy.orm import sessionmaker

from .errors import InvariantViolation, Unavailable
from .models import Base

logger = logging.getLogger(__name__)


def store_connect_args(uri, timeout):
    """
    Driver arguments that bound how long a statement waits on a lock, so a
    blocked FOR UPDATE fails with OperationalError instead of hanging.
    """
    backend = make_url(uri).get_backend_name()
    if backend == "sqlite":
        return {"timeout": timeout, "check_same_thread": False}
    if backend == "postgresql":
        return {"options": f"-c lock_timeout={int(timeout * 1000)}"}
    if backend in ("mysql", "mariadb"):
        seconds = max(1, math.ceil(timeout))
        return {"init_command": f"SET SESSION innodb_lock_wait_timeout={seconds}"}
    logger.warning("No lock timeout known for %s; relying on pool_timeout only", backend)
    return {}


def create_store(config):
    """
    Build the engine + session factory for `config` and create the tables.

    SQLite has no row locks, so every transaction there starts with
    BEGIN IMMEDIATE: writers queue on the database lock (up to the busy
    timeout) instead of failing when a reader upgrades to a writer.
    """
    uri = config.SQLALCHEMY_DATABASE_URI
    timeout = config.STORE_TIMEOUT_SECONDS

    if uri.startswith("sqlite"):
        engine = create_engine(
            uri,
            echo=config.SQLALCHEMY_ECHO,
            future=True,
            connect_args=store_connect_args(uri, timeout),
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        engine = create_engine(
            uri,
            echo=config.SQLALCHEMY_ECHO,
            future=True,
            pool_pre_ping=True,
            pool_timeout=timeout,
            connect_args=store_connect_args(uri, timeout),
        )

    SessionLocal = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )

    # Create tables if not present
    Base.metadata.create_all(engine)
    return engine, SessionLocal


@contextmanager
def unit_of_work(session_factory):
    """
    One store transaction: commit on success, roll back on any error.

    Lock timeouts, pool exhaustion and dropped connections surface as
    Unavailable; domain errors propagate untouched.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except (OperationalError, PoolTimeout) as exc:
        session.rollback()
        logger.error("Store unavailable: %s", exc)
        raise Unavailable("Store unavailable, retry later") from exc
    except DBAPIError as exc:
        session.rollback()
        if exc.connection_invalidated:
            logger.error("Store connection lost: %s", exc)
            raise Unavailable("Store connection lost, retry later") from exc
        raise
    except InvariantViolation as exc:
        session.rollback()
        logger.critical("Invariant violation, operation refused: %s", exc.message)
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
