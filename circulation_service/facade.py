import logging

from .catalog import CatalogMetadata, add_book
from .db import unit_of_work
from .errors import CirculationError, Conflict, InvariantViolation
from .holds import HoldQueueManager, claimed_copies
from .inventory import InventoryLedger
from .models import TransactionKind, TransactionState, utcnow
from .notifications import enqueue
from .sequence import SequenceGenerator
from .transactions import TransactionStateMachine

logger = logging.getLogger(__name__)


class CirculationFacade:
    """
    The operations the API layer calls. Each one is a single store
    transaction covering every book / transaction / hold / outbox row it
    touches, and returns plain dicts or raises a CirculationError.

    Whenever a copy goes back on the shelf, the release commits first and the
    hold queue is served in a second unit of work: losing the second step can
    only delay a notification, never miscount stock.
    """

    def __init__(self, session_factory, config, relay=None, clock=utcnow, worker=None):
        self._session_factory = session_factory
        self.ledger = InventoryLedger()
        self.sequence = SequenceGenerator(session_factory)
        self.transactions = TransactionStateMachine(
            self.ledger, config, claims=claimed_copies, clock=clock
        )
        self.holds = HoldQueueManager(self.ledger, config, clock=clock)
        self.relay = relay
        self.worker = worker
        self.allow_direct_borrow = config.ALLOW_DIRECT_BORROW
        self.dispatch_on_commit = config.DISPATCH_ON_COMMIT
        self.clock = clock

    # ----------------- catalog -----------------

    def add_book(self, metadata):
        if isinstance(metadata, dict):
            metadata = CatalogMetadata.from_dict(metadata)
        return self._run(lambda s: add_book(s, self.sequence, metadata).to_dict())

    def get_book(self, book_id):
        return self._run(lambda s: self.ledger.get_book(s, book_id).to_dict(), dispatch=False)

    def set_total_copies(self, book_id, total):
        def work(session):
            before = self.ledger.get_book(session, book_id).available_copies
            book = self.ledger.set_total_copies(session, book_id, total)
            return book.to_dict(), book.available_copies > before

        result, increased = self._run(work)
        if increased:
            self._serve_queue(book_id, result)
        return result

    def audit_book(self, book_id):
        """Check stock and queue invariants for one book."""

        def work(session):
            book = self.ledger.audit(session, book_id)
            self.holds.check_queue(session, book_id)
            return book.to_dict()

        return self._run(work, dispatch=False)

    # ----------------- borrow / reserve -----------------

    def borrow_direct(self, book_id, subject_id):
        if not self.allow_direct_borrow:
            raise Conflict("Direct borrowing is disabled; submit a borrow request instead")
        return self._run(
            lambda s: self.transactions.borrow_direct(s, book_id, subject_id).to_dict()
        )

    def request_borrow(self, book_id, subject_id):
        return self._run(
            lambda s: self.transactions.request_borrow(s, book_id, subject_id).to_dict()
        )

    def approve_borrow(self, txn_id, approver=None):
        return self._run(
            lambda s: self.transactions.approve_borrow(s, txn_id, approver).to_dict()
        )

    def reject_borrow(self, txn_id, reason, approver=None):
        return self._run(
            lambda s: self.transactions.reject(
                s, txn_id, reason, approver, kind=TransactionKind.BORROW
            ).to_dict()
        )

    def request_reservation(self, book_id, subject_id):
        return self._run(
            lambda s: self.transactions.request_reservation(s, book_id, subject_id).to_dict()
        )

    def approve_reservation(self, txn_id, approver=None):
        return self._run(
            lambda s: self.transactions.approve_reservation(s, txn_id, approver).to_dict()
        )

    def reject_reservation(self, txn_id, reason, approver=None):
        return self._run(
            lambda s: self.transactions.reject(
                s, txn_id, reason, approver, kind=TransactionKind.RESERVE
            ).to_dict()
        )

    def pick_up_reservation(self, txn_id):
        return self._run(lambda s: self.transactions.pick_up_reservation(s, txn_id).to_dict())

    def return_book(self, txn_id):
        def work(session):
            txn, released = self.transactions.complete(session, txn_id)
            return txn.to_dict(), released

        result, released = self._run(work)
        if released:
            self._serve_queue(result["book_id"], result)
        return result

    def cancel(self, txn_id, reason=None):
        def work(session):
            # an approved, unpicked reservation frees its earmarked copy on cancel
            current = self.transactions.get(session, txn_id)
            dropped_claim = (
                current.kind == TransactionKind.RESERVE
                and current.state == TransactionState.APPROVED
                and not current.holds_copy
            )
            txn, released = self.transactions.cancel(session, txn_id, reason)
            return txn.to_dict(), released or dropped_claim

        result, freed = self._run(work)
        if freed:
            self._serve_queue(result["book_id"], result)
        return result

    def transactions_for_subject(self, subject_id):
        return self._run(
            lambda s: [t.to_dict() for t in self.transactions.list_for_subject(s, subject_id)],
            dispatch=False,
        )

    def pending_requests(self, kind=None):
        if isinstance(kind, str):
            kind = TransactionKind(kind)
        return self._run(
            lambda s: [t.to_dict() for t in self.transactions.list_pending(s, kind)],
            dispatch=False,
        )

    def notify_overdue(self, now=None):
        """Queue an overdue notice for every overdue loan not yet reminded."""
        now = now or self.clock()

        def work(session):
            overdue = self.transactions.list_overdue(session, now)
            for txn in overdue:
                enqueue(
                    session,
                    txn.subject_id,
                    "overdue_notice",
                    {
                        "book_title": txn.book.title,
                        "due_at": txn.due_at.isoformat(),
                        "days_overdue": (now - txn.due_at).days,
                    },
                )
            self.transactions.mark_reminder_sent(session, [t.id for t in overdue])
            return [t.to_dict() for t in overdue]

        return self._run(work)

    # ----------------- holds -----------------

    def place_hold(self, book_id, subject_id):
        def work(session):
            hold = self.holds.place_hold(session, book_id, subject_id)
            return hold.to_dict(), self.holds.unclaimed_copies(session, book_id) > 0

        result, copy_free = self._run(work)
        if copy_free:
            # a copy is already on the shelf; the head of the queue gets it now
            self._serve_queue(book_id, result)
            promoted = result.get("next_hold")
            if promoted is not None and promoted["id"] == result["id"]:
                return promoted
        return result

    def cancel_hold(self, hold_id, reason=None):
        def work(session):
            hold, was_ready = self.holds.cancel_hold(session, hold_id, reason)
            return hold.to_dict(), was_ready

        result, was_ready = self._run(work)
        if was_ready:
            # the copy it was waiting on goes to the next in line
            self._serve_queue(result["book_id"], result)
        return result

    def fulfill_next_hold(self, book_id):
        def work(session):
            hold = self.holds.fulfill_next(session, book_id)
            return hold.to_dict() if hold is not None else None

        return self._run(work)

    def pick_up_hold(self, hold_id):
        """Ready hold -> fulfilled, and the subject walks out with an active borrow."""

        def work(session):
            hold = self.holds.mark_picked_up(session, hold_id)
            txn = self.transactions.borrow_direct(session, hold.book_id, hold.subject_id)
            return {"hold": hold.to_dict(), "transaction": txn.to_dict()}

        return self._run(work)

    def expire_stale_holds(self, now=None):
        summary = self._run(lambda s: self.holds.expire_stale(s, now))
        for entry in summary:
            if entry["ready_expired"]:
                self._serve_queue(entry["book_id"], entry)
        return summary

    def hold_queue(self, book_id):
        def work(session):
            self.ledger.get_book(session, book_id)
            return [h.to_dict() for h in self.holds.queue_for_book(session, book_id)]

        return self._run(work, dispatch=False)

    def hold_position(self, book_id, subject_id):
        def work(session):
            hold, total = self.holds.position(session, book_id, subject_id)
            return {"hold_id": hold.id, "queue_position": hold.queue_position, "total_queue": total}

        return self._run(work, dispatch=False)

    def holds_for_subject(self, subject_id):
        return self._run(
            lambda s: [h.to_dict() for h in self.holds.list_for_subject(s, subject_id)],
            dispatch=False,
        )

    # ----------------- notifications -----------------

    def dispatch_notifications(self, limit=100):
        if self.relay is None:
            return 0
        return self.relay.dispatch_pending(limit)

    # ----------------- internals -----------------

    def _run(self, work, dispatch=True):
        with unit_of_work(self._session_factory) as session:
            result = work(session)
        if dispatch:
            self._after_commit()
        return result

    def _serve_queue(self, book_id, result):
        """
        Follow-up after availability went up. The triggering operation has
        already committed, so a failure here is logged and reported on the
        result rather than raised.
        """
        try:
            hold = self.fulfill_next_hold(book_id)
        except InvariantViolation as exc:
            logger.critical("Hold queue for book %s needs attention: %s", book_id, exc.message)
            result["hold_followup_error"] = exc.message
        except CirculationError as exc:
            logger.error("Could not serve hold queue for book %s: %s", book_id, exc.message)
            result["hold_followup_error"] = exc.message
        except Exception as exc:
            logger.error("Hold queue follow-up for book %s failed: %s", book_id, exc)
            result["hold_followup_error"] = str(exc)
        else:
            result["next_hold"] = hold

    def _after_commit(self):
        if self.relay is None:
            return
        if not self.dispatch_on_commit:
            if self.worker is not None:
                self.worker.wake()
            return
        try:
            self.relay.dispatch_pending()
        except Exception as exc:
            logger.warning("Notification dispatch failed; will retry later: %s", exc)
