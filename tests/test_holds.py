from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import DBAPIError

from circulation_service.db import unit_of_work
from circulation_service.errors import Conflict, InvalidTransition, InvariantViolation, NotFound, OutOfStock
from circulation_service.models import Hold, utcnow


def _positions(facade, book_id):
    return [(h["subject_id"], h["queue_position"]) for h in facade.hold_queue(book_id)]


@pytest.fixture
def lent_book(facade, make_book):
    """A one-copy book that is out on loan to 'owner'."""
    book = make_book(total=1)
    txn = facade.borrow_direct(book["id"], "owner")
    return book, txn


def test_positions_are_assigned_in_order(facade, lent_book):
    book, _ = lent_book
    for subject in ("alice", "bob", "carol"):
        facade.place_hold(book["id"], subject)

    assert _positions(facade, book["id"]) == [("alice", 1), ("bob", 2), ("carol", 3)]
    assert facade.hold_position(book["id"], "bob") == {
        "hold_id": facade.hold_queue(book["id"])[1]["id"],
        "queue_position": 2,
        "total_queue": 3,
    }


def test_duplicate_hold_is_a_conflict(facade, lent_book):
    book, _ = lent_book
    facade.place_hold(book["id"], "alice")

    with pytest.raises(Conflict) as excinfo:
        facade.place_hold(book["id"], "alice")
    assert excinfo.value.details["position"] == 1


def test_hold_and_borrow_are_exclusive(facade, lent_book):
    book, _ = lent_book

    with pytest.raises(Conflict):
        facade.place_hold(book["id"], "owner")


def test_hold_on_unknown_book(facade):
    with pytest.raises(NotFound):
        facade.place_hold(999, "alice")


def test_cancel_reindexes(facade, lent_book):
    book, _ = lent_book
    holds = [facade.place_hold(book["id"], s) for s in ("alice", "bob", "carol", "dave")]

    cancelled = facade.cancel_hold(holds[1]["id"], reason="no longer needed")

    assert cancelled["state"] == "cancelled"
    assert cancelled["cancelled_reason"] == "no longer needed"
    assert _positions(facade, book["id"]) == [("alice", 1), ("carol", 2), ("dave", 3)]

    with pytest.raises(InvalidTransition):
        facade.cancel_hold(holds[1]["id"])


def test_return_makes_next_hold_ready(facade, lent_book, dispatcher):
    book, txn = lent_book
    assert facade.get_book(book["id"])["available_copies"] == 0

    hold = facade.place_hold(book["id"], "bob")
    assert hold["queue_position"] == 1

    result = facade.return_book(txn["id"])

    assert result["next_hold"]["id"] == hold["id"]
    assert facade.get_book(book["id"])["available_copies"] == 1
    assert facade.hold_queue(book["id"]) == []
    ready = [h for h in facade.holds_for_subject("bob") if h["state"] == "ready"]
    assert len(ready) == 1
    assert ready[0]["ready_at"] is not None
    assert "hold_ready" in dispatcher.templates("bob")
    facade.audit_book(book["id"])


def test_fulfill_next_is_idempotent(facade, lent_book):
    book, txn = lent_book
    hold = facade.place_hold(book["id"], "alice")
    facade.return_book(txn["id"])

    # the return already served the queue; another call changes nothing
    assert facade.fulfill_next_hold(book["id"]) is None
    assert facade.fulfill_next_hold(book["id"]) is None
    states = [h["state"] for h in facade.holds_for_subject("alice")]
    assert states == ["ready"]
    assert hold["id"] == facade.holds_for_subject("alice")[0]["id"]


def test_fulfill_next_only_promotes_one_per_free_copy(facade, lent_book):
    book, txn = lent_book
    facade.place_hold(book["id"], "alice")
    facade.place_hold(book["id"], "bob")
    facade.return_book(txn["id"])

    assert facade.fulfill_next_hold(book["id"]) is None
    assert _positions(facade, book["id"]) == [("bob", 1)]


def test_fulfill_without_holds_is_a_noop(facade, make_book):
    book = make_book(total=1)
    assert facade.fulfill_next_hold(book["id"]) is None


def test_ready_hold_keeps_the_copy_for_its_owner(facade, lent_book):
    book, txn = lent_book
    hold = facade.place_hold(book["id"], "alice")
    facade.return_book(txn["id"])

    with pytest.raises(OutOfStock):
        facade.borrow_direct(book["id"], "walk-in")

    picked = facade.pick_up_hold(hold["id"])
    assert picked["hold"]["state"] == "fulfilled"
    assert picked["transaction"]["state"] == "active"
    assert picked["transaction"]["subject_id"] == "alice"
    assert facade.get_book(book["id"])["available_copies"] == 0
    facade.audit_book(book["id"])


def test_pick_up_requires_ready(facade, lent_book):
    book, _ = lent_book
    hold = facade.place_hold(book["id"], "alice")

    with pytest.raises(InvalidTransition):
        facade.pick_up_hold(hold["id"])


def test_cancelling_ready_hold_serves_next(facade, lent_book):
    book, txn = lent_book
    first = facade.place_hold(book["id"], "alice")
    second = facade.place_hold(book["id"], "bob")
    facade.return_book(txn["id"])

    result = facade.cancel_hold(first["id"])

    assert result["next_hold"]["id"] == second["id"]
    assert result["next_hold"]["state"] == "ready"
    assert facade.hold_queue(book["id"]) == []


def test_expire_stale_holds(facade, lent_book):
    book, txn = lent_book
    first = facade.place_hold(book["id"], "alice")
    second = facade.place_hold(book["id"], "bob")
    third = facade.place_hold(book["id"], "carol")
    facade.return_book(txn["id"])  # alice ready, pickup window 7 days

    summary = facade.expire_stale_holds(now=utcnow() + timedelta(days=8))

    assert summary[0]["book_id"] == book["id"]
    assert summary[0]["expired"] == 1
    assert summary[0]["ready_expired"] == 1
    # bob moved up to ready once alice's claim lapsed
    assert summary[0]["next_hold"]["id"] == second["id"]
    assert _positions(facade, book["id"]) == [("carol", 1)]
    assert facade.holds_for_subject("alice")[0]["state"] == "expired"

    summary = facade.expire_stale_holds(now=utcnow() + timedelta(days=30))
    states = {h["id"]: h["state"] for s in ("alice", "bob", "carol") for h in facade.holds_for_subject(s)}
    assert states == {first["id"]: "expired", second["id"]: "expired", third["id"]: "expired"}
    assert facade.hold_queue(book["id"]) == []


def test_queue_stays_contiguous_through_mixed_operations(facade, lent_book):
    book, txn = lent_book
    subjects = ["s%d" % i for i in range(8)]
    holds = {s: facade.place_hold(book["id"], s) for s in subjects}

    facade.cancel_hold(holds["s2"]["id"])
    facade.cancel_hold(holds["s5"]["id"])
    facade.return_book(txn["id"])  # s0 ready
    facade.pick_up_hold(holds["s0"]["id"])
    facade.place_hold(book["id"], "late")
    facade.cancel_hold(holds["s7"]["id"])

    queue = facade.hold_queue(book["id"])
    assert [h["queue_position"] for h in queue] == list(range(1, len(queue) + 1))
    assert [h["subject_id"] for h in queue] == ["s1", "s3", "s4", "s6", "late"]
    facade.audit_book(book["id"])


def test_broken_queue_is_refused_not_repaired(store, facade, lent_book):
    book, _ = lent_book
    hold = facade.place_hold(book["id"], "alice")
    with unit_of_work(store) as session:
        session.execute(update(Hold).where(Hold.id == hold["id"]).values(queue_position=3))

    with pytest.raises(InvariantViolation):
        facade.place_hold(book["id"], "bob")
    with pytest.raises(InvariantViolation):
        facade.audit_book(book["id"])
    assert [h["subject_id"] for h in facade.hold_queue(book["id"])] == ["alice"]


def test_hold_on_shelved_copy_is_ready_at_once(facade, make_book, dispatcher):
    book = make_book(total=1)

    hold = facade.place_hold(book["id"], "alice")

    assert hold["state"] == "ready"
    assert hold["queue_position"] is None
    assert "hold_ready" in dispatcher.templates("alice")
    with pytest.raises(OutOfStock):
        facade.borrow_direct(book["id"], "walk-in")

    picked = facade.pick_up_hold(hold["id"])
    assert picked["transaction"]["subject_id"] == "alice"
    facade.audit_book(book["id"])


def test_hold_behind_a_promised_copy_waits(facade, lent_book):
    book, txn = lent_book
    facade.place_hold(book["id"], "alice")
    facade.return_book(txn["id"])  # alice ready, copy promised

    hold = facade.place_hold(book["id"], "bob")

    assert hold["state"] == "active"
    assert hold["queue_position"] == 1


def _record_lock_order(monkeypatch, facade):
    calls = []
    lock_book = facade.ledger.lock_book
    get_hold = facade.holds.get

    def recording_lock_book(session, book_id):
        calls.append("book")
        return lock_book(session, book_id)

    def recording_get(session, hold_id, lock=False):
        if lock:
            calls.append("hold")
        return get_hold(session, hold_id, lock=lock)

    monkeypatch.setattr(facade.ledger, "lock_book", recording_lock_book)
    monkeypatch.setattr(facade.holds, "get", recording_get)
    return calls


def test_cancel_locks_book_before_hold(monkeypatch, facade, lent_book):
    book, _ = lent_book
    hold = facade.place_hold(book["id"], "alice")
    calls = _record_lock_order(monkeypatch, facade)

    facade.cancel_hold(hold["id"])

    assert calls.index("book") < calls.index("hold")


def test_pick_up_locks_book_before_hold(monkeypatch, facade, lent_book):
    book, txn = lent_book
    hold = facade.place_hold(book["id"], "alice")
    facade.return_book(txn["id"])
    calls = _record_lock_order(monkeypatch, facade)

    facade.pick_up_hold(hold["id"])

    assert calls.index("book") < calls.index("hold")


def test_store_error_while_serving_queue_keeps_the_return(monkeypatch, facade, lent_book):
    book, txn = lent_book
    facade.place_hold(book["id"], "alice")

    def broken_fulfill(session, book_id):
        raise DBAPIError("UPDATE hold", {}, Exception("disk I/O error"))

    monkeypatch.setattr(facade.holds, "fulfill_next", broken_fulfill)
    result = facade.return_book(txn["id"])

    assert result["state"] == "completed"
    assert "disk I/O error" in result["hold_followup_error"]
    assert "next_hold" not in result
    assert facade.get_book(book["id"])["available_copies"] == 1
