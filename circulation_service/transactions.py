import logging
from datetime import timedelta

from sqlalchemy import func, select, update

from .errors import Conflict, InvalidTransition, InvariantViolation, NotFound, OutOfStock
from .models import (
    OPEN_HOLD_STATES,
    CirculationTransaction,
    Hold,
    TransactionKind,
    TransactionState,
    utcnow,
)
from .notifications import enqueue

logger = logging.getLogger(__name__)

PENDING = TransactionState.PENDING
ACTIVE = TransactionState.ACTIVE
APPROVED = TransactionState.APPROVED
COMPLETED = TransactionState.COMPLETED
REJECTED = TransactionState.REJECTED
CANCELLED = TransactionState.CANCELLED

# Legal moves per kind. Anything not listed here is refused.
TRANSITIONS = {
    TransactionKind.BORROW: {
        PENDING: frozenset({ACTIVE, REJECTED, CANCELLED}),
        ACTIVE: frozenset({COMPLETED, CANCELLED}),
    },
    TransactionKind.RESERVE: {
        PENDING: frozenset({APPROVED, REJECTED, CANCELLED}),
        APPROVED: frozenset({COMPLETED, CANCELLED}),
    },
}

OPEN_BORROW_STATES = (PENDING, ACTIVE)
OPEN_RESERVE_STATES = (PENDING, APPROVED)


def find_open_borrow(session, book_id, subject_id):
    return session.execute(
        select(CirculationTransaction).where(
            CirculationTransaction.book_id == book_id,
            CirculationTransaction.subject_id == subject_id,
            CirculationTransaction.kind == TransactionKind.BORROW,
            CirculationTransaction.state.in_(OPEN_BORROW_STATES),
        )
    ).scalars().first()


def find_open_hold(session, book_id, subject_id):
    return session.execute(
        select(Hold).where(
            Hold.book_id == book_id,
            Hold.subject_id == subject_id,
            Hold.state.in_(OPEN_HOLD_STATES),
        )
    ).scalars().first()


def count_unpicked_reservations(session, book_id):
    """Approved reservations that claim a copy but have not taken it yet."""
    return session.execute(
        select(func.count(CirculationTransaction.id)).where(
            CirculationTransaction.book_id == book_id,
            CirculationTransaction.kind == TransactionKind.RESERVE,
            CirculationTransaction.state == APPROVED,
            CirculationTransaction.holds_copy.is_(False),
        )
    ).scalar_one()


class TransactionStateMachine:
    """
    Borrow / reserve lifecycle. This is the only caller of
    InventoryLedger.reserve_copy / release_copy for circulation events, and it
    does so through _take_copy / _give_back_copy, which flip holds_copy so a
    decrement is always paired with exactly one increment.
    """

    def __init__(self, ledger, config, claims=None, clock=utcnow):
        self.ledger = ledger
        self.loan_period = timedelta(days=config.LOAN_PERIOD_DAYS)
        self.reservation_window = timedelta(days=config.RESERVATION_WINDOW_DAYS)
        self.borrow_limit = config.BORROW_LIMIT
        # callable(session, book_id) -> copies already promised to someone
        self.claims = claims or count_unpicked_reservations
        self.clock = clock

    # ----------------- entry points -----------------

    def borrow_direct(self, session, book_id, subject_id):
        """Self-serve borrow: straight to active, copy taken immediately."""
        book = self.ledger.lock_book(session, book_id)
        self._guard_new_borrow(session, book_id, subject_id)
        self._require_unclaimed_copy(session, book)

        now = self.clock()
        txn = CirculationTransaction(
            book_id=book_id,
            subject_id=subject_id,
            kind=TransactionKind.BORROW,
            state=ACTIVE,
            requested_at=now,
            approved_at=now,
            due_at=now + self.loan_period,
        )
        session.add(txn)
        self._take_copy(session, txn)
        session.flush()
        logger.info("Book %s borrowed by %s (transaction %s)", book_id, subject_id, txn.id)
        return txn

    def request_borrow(self, session, book_id, subject_id):
        book = self.ledger.lock_book(session, book_id)
        self._guard_new_borrow(session, book_id, subject_id)

        txn = CirculationTransaction(
            book_id=book_id,
            subject_id=subject_id,
            kind=TransactionKind.BORROW,
            state=PENDING,
            requested_at=self.clock(),
        )
        session.add(txn)
        session.flush()
        enqueue(
            session,
            subject_id,
            "borrow_request_submitted",
            {"book_title": book.title, "requested_at": txn.requested_at.isoformat()},
        )
        logger.info("Borrow of book %s requested by %s (transaction %s)", book_id, subject_id, txn.id)
        return txn

    def request_reservation(self, session, book_id, subject_id):
        book = self.ledger.lock_book(session, book_id)
        existing = session.execute(
            select(CirculationTransaction.id).where(
                CirculationTransaction.book_id == book_id,
                CirculationTransaction.subject_id == subject_id,
                CirculationTransaction.kind == TransactionKind.RESERVE,
                CirculationTransaction.state.in_(OPEN_RESERVE_STATES),
            )
        ).first()
        if existing:
            raise Conflict(
                "You have already reserved this book", transaction_id=existing[0]
            )

        now = self.clock()
        txn = CirculationTransaction(
            book_id=book_id,
            subject_id=subject_id,
            kind=TransactionKind.RESERVE,
            state=PENDING,
            requested_at=now,
            due_at=now + self.reservation_window,
        )
        session.add(txn)
        session.flush()
        enqueue(session, subject_id, "reservation_pending", {"book_title": book.title})
        logger.info("Reservation of book %s requested by %s (transaction %s)", book_id, subject_id, txn.id)
        return txn

    # ----------------- transitions -----------------

    def approve_borrow(self, session, txn_id, approver=None):
        txn, book = self._lock_with_book(session, txn_id)
        self._check(txn, ACTIVE, kind=TransactionKind.BORROW)
        self._require_unclaimed_copy(session, book)

        self._take_copy(session, txn)
        now = self.clock()
        txn.state = ACTIVE
        txn.approver = approver
        txn.approved_at = now
        txn.due_at = now + self.loan_period
        session.flush()
        enqueue(
            session,
            txn.subject_id,
            "borrow_request_approved",
            {
                "book_title": book.title,
                "requested_at": txn.requested_at.isoformat(),
                "due_at": txn.due_at.isoformat(),
            },
        )
        logger.info("Borrow %s approved by %s, due %s", txn.id, approver, txn.due_at)
        return txn

    def approve_reservation(self, session, txn_id, approver=None):
        txn, book = self._lock_with_book(session, txn_id)
        self._check(txn, APPROVED, kind=TransactionKind.RESERVE)
        # nothing is decremented until pickup, but the copy must be free now
        self._require_unclaimed_copy(session, book)

        now = self.clock()
        txn.state = APPROVED
        txn.approver = approver
        txn.approved_at = now
        txn.due_at = now + self.reservation_window
        session.flush()
        enqueue(
            session,
            txn.subject_id,
            "reservation_approved",
            {"book_title": book.title, "pickup_by": txn.due_at.isoformat()},
        )
        logger.info("Reservation %s approved by %s", txn.id, approver)
        return txn

    def pick_up_reservation(self, session, txn_id):
        txn, _ = self._lock_with_book(session, txn_id)
        if txn.kind != TransactionKind.RESERVE or txn.state != APPROVED:
            raise InvalidTransition(
                f"Transaction {txn.id} is not an approved reservation",
                transaction_id=txn.id,
                state=txn.state.value,
            )
        if txn.holds_copy:
            raise Conflict("Reservation already picked up", transaction_id=txn.id)

        self._take_copy(session, txn)
        txn.due_at = self.clock() + self.loan_period
        session.flush()
        logger.info("Reservation %s picked up, due %s", txn.id, txn.due_at)
        return txn

    def reject(self, session, txn_id, reason, approver=None, kind=None):
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        txn = self.get(session, txn_id, lock=True)
        self._check(txn, REJECTED, kind=kind)

        txn.state = REJECTED
        txn.approver = approver
        txn.approved_at = self.clock()
        txn.rejection_reason = reason.strip()
        session.flush()
        template = (
            "borrow_request_rejected"
            if txn.kind == TransactionKind.BORROW
            else "reservation_rejected"
        )
        enqueue(
            session,
            txn.subject_id,
            template,
            {
                "book_title": txn.book.title,
                "requested_at": txn.requested_at.isoformat(),
                "reason": txn.rejection_reason,
            },
        )
        logger.info("%s %s rejected by %s: %s", txn.kind.value, txn.id, approver, reason)
        return txn

    def complete(self, session, txn_id):
        """
        active/approved -> completed. Returns (txn, released) where released
        tells the caller whether a copy went back on the shelf.
        """
        txn, _ = self._lock_with_book(session, txn_id)
        self._check(txn, COMPLETED)
        return txn, self._finish(session, txn)

    def cancel(self, session, txn_id, reason=None):
        """
        pending/active/approved -> cancelled. A transaction that holds a copy
        is completed instead, so the copy is released exactly once.
        """
        txn, _ = self._lock_with_book(session, txn_id)
        self._check(txn, CANCELLED)
        if txn.holds_copy:
            logger.info("Cancel of %s holding a copy treated as return", txn.id)
            return txn, self._finish(session, txn)

        txn.state = CANCELLED
        txn.completed_at = self.clock()
        session.flush()
        logger.info("%s %s cancelled (%s)", txn.kind.value, txn.id, reason or "no reason")
        return txn, False

    # ----------------- queries -----------------

    def get(self, session, txn_id, lock=False):
        q = select(CirculationTransaction).where(CirculationTransaction.id == txn_id)
        if lock:
            q = q.with_for_update().execution_options(populate_existing=True)
        txn = session.execute(q).scalar_one_or_none()
        if txn is None:
            raise NotFound(f"Transaction {txn_id} not found", transaction_id=txn_id)
        return txn

    def list_for_subject(self, session, subject_id):
        return session.execute(
            select(CirculationTransaction)
            .where(CirculationTransaction.subject_id == subject_id)
            .order_by(CirculationTransaction.requested_at.desc())
        ).scalars().all()

    def list_pending(self, session, kind=None):
        q = select(CirculationTransaction).where(CirculationTransaction.state == PENDING)
        if kind is not None:
            q = q.where(CirculationTransaction.kind == kind)
        return session.execute(q.order_by(CirculationTransaction.requested_at)).scalars().all()

    def list_overdue(self, session, now=None, include_reminded=False):
        now = now or self.clock()
        q = select(CirculationTransaction).where(
            CirculationTransaction.holds_copy.is_(True),
            CirculationTransaction.due_at < now,
        )
        if not include_reminded:
            q = q.where(CirculationTransaction.reminder_sent.is_(False))
        return session.execute(q.order_by(CirculationTransaction.due_at)).scalars().all()

    def mark_reminder_sent(self, session, txn_ids):
        """Flag overdue loans as reminded so the next sweep skips them."""
        if not txn_ids:
            return 0
        result = session.execute(
            update(CirculationTransaction)
            .where(CirculationTransaction.id.in_(txn_ids))
            .values(reminder_sent=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def count_borrow_claims(self, session, subject_id):
        return session.execute(
            select(func.count(CirculationTransaction.id)).where(
                CirculationTransaction.subject_id == subject_id,
                CirculationTransaction.kind == TransactionKind.BORROW,
                CirculationTransaction.state.in_(OPEN_BORROW_STATES),
            )
        ).scalar_one()

    # ----------------- internals -----------------

    def _lock_with_book(self, session, txn_id):
        """Lock the book row, then the transaction row; every path takes them in this order."""
        txn = self.get(session, txn_id)
        book = self.ledger.lock_book(session, txn.book_id)
        return self.get(session, txn_id, lock=True), book

    def _check(self, txn, target, kind=None):
        if kind is not None and txn.kind != kind:
            raise InvalidTransition(
                f"Transaction {txn.id} is a {txn.kind.value}, not a {kind.value}",
                transaction_id=txn.id,
            )
        allowed = TRANSITIONS[txn.kind].get(txn.state, frozenset())
        if target not in allowed:
            raise InvalidTransition(
                f"Cannot move {txn.kind.value} {txn.id} from {txn.state.value} to {target.value}",
                transaction_id=txn.id,
                state=txn.state.value,
            )

    def _guard_new_borrow(self, session, book_id, subject_id):
        existing = find_open_borrow(session, book_id, subject_id)
        if existing is not None:
            raise Conflict(
                "You already have a pending or active borrow for this book.",
                transaction_id=existing.id,
            )
        hold = find_open_hold(session, book_id, subject_id)
        if hold is not None:
            raise Conflict(
                "You have a hold on this book. Pick it up or cancel it first.",
                hold_id=hold.id,
                state=hold.state.value,
            )
        # pending requests count too, otherwise approvals could push past the cap
        if self.count_borrow_claims(session, subject_id) >= self.borrow_limit:
            raise Conflict(
                f"You have reached the maximum borrowing limit of {self.borrow_limit} books.",
                limit=self.borrow_limit,
            )

    def _require_unclaimed_copy(self, session, book):
        claimed = self.claims(session, book.id)
        if book.available_copies - claimed <= 0:
            raise OutOfStock(
                f"No unclaimed copies of '{book.title}' available",
                book_id=book.id,
                available=book.available_copies,
                claimed=claimed,
            )

    def _finish(self, session, txn):
        released = False
        if txn.holds_copy:
            self._give_back_copy(session, txn)
            released = True
        txn.state = COMPLETED
        txn.completed_at = self.clock()
        session.flush()
        logger.info("%s %s completed (copy released: %s)", txn.kind.value, txn.id, released)
        return released

    def _take_copy(self, session, txn):
        if txn.holds_copy:
            raise InvariantViolation(
                f"Transaction {txn.id} already holds a copy", transaction_id=txn.id
            )
        self.ledger.reserve_copy(session, txn.book_id)
        txn.holds_copy = True

    def _give_back_copy(self, session, txn):
        if not txn.holds_copy:
            raise InvariantViolation(
                f"Transaction {txn.id} holds no copy to release", transaction_id=txn.id
            )
        self.ledger.release_copy(session, txn.book_id)
        txn.holds_copy = False
