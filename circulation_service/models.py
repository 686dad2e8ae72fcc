# circulation_service/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Text,
)

Base = declarative_base()


def utcnow():
    # naive UTC, matching what SQLite hands back for DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


def _enum_column(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class TransactionKind(enum.Enum):
    BORROW = "borrow"
    RESERVE = "reserve"


class TransactionState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self):
        return self in TERMINAL_TRANSACTION_STATES


TERMINAL_TRANSACTION_STATES = frozenset(
    {TransactionState.COMPLETED, TransactionState.REJECTED, TransactionState.CANCELLED}
)


class HoldState(enum.Enum):
    ACTIVE = "active"
    READY = "ready"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


OPEN_HOLD_STATES = (HoldState.ACTIVE, HoldState.READY)


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    category = Column(String(100))
    year = Column(Integer)
    accession_id = Column(String(20), unique=True, nullable=False)
    call_number = Column(String(50))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def status(self):
        """Derived from the counts; never stored."""
        if self.total_copies == 0:
            return "withdrawn"
        return "available" if self.available_copies > 0 else "unavailable"

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "year": self.year,
            "accession_id": self.accession_id,
            "call_number": self.call_number,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "status": self.status,
        }


class CirculationTransaction(Base):
    """
    One borrow or reserve request through its lifecycle. Rows are kept
    forever as the audit trail.
    """
    __tablename__ = "circulation_transaction"
    __table_args__ = (
        Index("ix_transaction_book_subject", "book_id", "subject_id"),
        Index("ix_transaction_subject_state", "subject_id", "state"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    subject_id = Column(String(100), nullable=False)
    kind = Column(_enum_column(TransactionKind, "transaction_kind"), nullable=False)
    state = Column(
        _enum_column(TransactionState, "transaction_state"),
        nullable=False,
        default=TransactionState.PENDING,
    )
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    approved_at = Column(DateTime)
    due_at = Column(DateTime)
    completed_at = Column(DateTime)
    approver = Column(String(100))
    rejection_reason = Column(Text)
    # True while this transaction accounts for one decrement of available_copies
    holds_copy = Column(Boolean, nullable=False, default=False)
    reminder_sent = Column(Boolean, nullable=False, default=False)

    book = relationship("Book")

    def to_dict(self):
        return {
            "id": self.id,
            "book_id": self.book_id,
            "subject_id": self.subject_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "requested_at": _iso(self.requested_at),
            "approved_at": _iso(self.approved_at),
            "due_at": _iso(self.due_at),
            "completed_at": _iso(self.completed_at),
            "approver": self.approver,
            "rejection_reason": self.rejection_reason,
            "holds_copy": self.holds_copy,
        }


class Hold(Base):
    __tablename__ = "hold"
    __table_args__ = (
        Index("ix_hold_book_state", "book_id", "state"),
        Index("ix_hold_subject_state", "subject_id", "state"),
        Index("ix_hold_expires_at", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    subject_id = Column(String(100), nullable=False)
    queue_position = Column(Integer)
    state = Column(
        _enum_column(HoldState, "hold_state"),
        nullable=False,
        default=HoldState.ACTIVE,
    )
    placed_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    ready_at = Column(DateTime)
    picked_up_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancelled_reason = Column(String(255))

    book = relationship("Book")

    def to_dict(self):
        return {
            "id": self.id,
            "book_id": self.book_id,
            "subject_id": self.subject_id,
            "queue_position": self.queue_position,
            "state": self.state.value,
            "placed_at": _iso(self.placed_at),
            "expires_at": _iso(self.expires_at),
            "ready_at": _iso(self.ready_at),
            "picked_up_at": _iso(self.picked_up_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_reason": self.cancelled_reason,
        }


class SequenceCounter(Base):
    __tablename__ = "sequence_counter"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    value = Column(Integer, nullable=False, default=0)


class PendingNotification(Base):
    """
    Outgoing notification requests, written in the same transaction as the
    state change that caused them and drained by NotificationRelay.
    """
    __tablename__ = "pending_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(100), nullable=False)
    template = Column(String(50), nullable=False)
    context = Column(Text)  # JSON blob
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime)
