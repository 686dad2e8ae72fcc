import os
import logging
from functools import wraps

from flask import Blueprint, Flask, abort, current_app, jsonify, request
from flask_cors import CORS

from .config import Config
from .db import create_store
from .errors import CirculationError
from .facade import CirculationFacade
from .notifications import RelayWorker, build_relay

logger = logging.getLogger(__name__)

api = Blueprint("circulation", __name__, url_prefix="/api")


def get_facade():
    return current_app.extensions["circulation"]


# ----------------- helpers -----------------

def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if not expected or sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def json_body(*required):
    data = request.get_json(silent=True) or {}
    missing = [name for name in required if data.get(name) in (None, "")]
    if missing:
        abort(400, description=f"{', '.join(missing)} required")
    return data


# ----------------- health -----------------

@api.get("/health")
def health():
    return jsonify({"status": "ok", "service": "circulation_service"}), 200


# ----------------- books -----------------

@api.post("/books")
@require_api_key
def create_book():
    data = json_body("title")
    book = get_facade().add_book(data)
    return jsonify(book), 201


@api.get("/books/<int:book_id>")
def get_book(book_id):
    return jsonify(get_facade().get_book(book_id))


@api.put("/books/<int:book_id>/copies")
@require_api_key
def set_copies(book_id):
    data = json_body("total_copies")
    return jsonify(get_facade().set_total_copies(book_id, int(data["total_copies"])))


@api.get("/books/<int:book_id>/audit")
@require_api_key
def audit_book(book_id):
    return jsonify(get_facade().audit_book(book_id))


# ----------------- transactions -----------------

@api.post("/transactions/borrow")
@require_api_key
def borrow_book():
    data = json_body("book_id", "subject_id")
    txn = get_facade().borrow_direct(int(data["book_id"]), data["subject_id"])
    return jsonify({"message": "Book borrowed successfully", "transaction": txn}), 201


@api.post("/transactions/borrow-request")
@require_api_key
def request_borrow():
    data = json_body("book_id", "subject_id")
    txn = get_facade().request_borrow(int(data["book_id"]), data["subject_id"])
    return jsonify(
        {"message": "Borrow request submitted and pending approval.", "transaction": txn}
    ), 201


@api.post("/transactions/reserve")
@require_api_key
def request_reservation():
    data = json_body("book_id", "subject_id")
    txn = get_facade().request_reservation(int(data["book_id"]), data["subject_id"])
    return jsonify({"message": "Reservation requested", "transaction": txn}), 201


@api.post("/transactions/<int:txn_id>/approve-borrow")
@require_api_key
def approve_borrow(txn_id):
    data = json_body()
    txn = get_facade().approve_borrow(txn_id, data.get("approver"))
    return jsonify({"message": "Borrow request approved", "transaction": txn})


@api.post("/transactions/<int:txn_id>/reject-borrow")
@require_api_key
def reject_borrow(txn_id):
    data = json_body("reason")
    txn = get_facade().reject_borrow(txn_id, data["reason"], data.get("approver"))
    return jsonify({"message": "Borrow request rejected", "transaction": txn})


@api.post("/transactions/<int:txn_id>/approve-reservation")
@require_api_key
def approve_reservation(txn_id):
    data = json_body()
    txn = get_facade().approve_reservation(txn_id, data.get("approver"))
    return jsonify({"message": "Reservation approved", "transaction": txn})


@api.post("/transactions/<int:txn_id>/reject-reservation")
@require_api_key
def reject_reservation(txn_id):
    data = json_body("reason")
    txn = get_facade().reject_reservation(txn_id, data["reason"], data.get("approver"))
    return jsonify({"message": "Reservation rejected", "transaction": txn})


@api.post("/transactions/<int:txn_id>/pickup")
@require_api_key
def pick_up_reservation(txn_id):
    txn = get_facade().pick_up_reservation(txn_id)
    return jsonify({"message": "Reservation picked up", "transaction": txn})


@api.post("/transactions/<int:txn_id>/return")
@require_api_key
def return_book(txn_id):
    txn = get_facade().return_book(txn_id)
    return jsonify({"message": "Returned", "transaction": txn})


@api.post("/transactions/<int:txn_id>/cancel")
@require_api_key
def cancel_transaction(txn_id):
    data = json_body()
    txn = get_facade().cancel(txn_id, data.get("reason"))
    return jsonify({"message": "Cancelled", "transaction": txn})


@api.get("/transactions/user/<subject_id>")
@require_api_key
def list_transactions(subject_id):
    return jsonify({"transactions": get_facade().transactions_for_subject(subject_id)})


@api.get("/transactions/pending")
@require_api_key
def pending_requests():
    kind = request.args.get("kind")
    return jsonify({"transactions": get_facade().pending_requests(kind)})


@api.post("/transactions/overdue/notify")
@require_api_key
def notify_overdue():
    overdue = get_facade().notify_overdue()
    return jsonify({"message": f"Queued {len(overdue)} overdue notices", "transactions": overdue})


# ----------------- holds -----------------

@api.post("/holds/place")
@require_api_key
def place_hold():
    data = json_body("book_id", "subject_id")
    hold = get_facade().place_hold(int(data["book_id"]), data["subject_id"])
    return jsonify({"message": "Hold placed successfully!", "hold": hold}), 201


@api.post("/holds/<int:hold_id>/cancel")
@require_api_key
def cancel_hold(hold_id):
    data = json_body()
    hold = get_facade().cancel_hold(hold_id, data.get("reason"))
    return jsonify({"message": "Hold cancelled successfully", "hold": hold})


@api.post("/holds/<int:hold_id>/pickup")
@require_api_key
def pick_up_hold(hold_id):
    return jsonify(get_facade().pick_up_hold(hold_id))


@api.get("/holds/book/<int:book_id>")
def hold_queue(book_id):
    queue = get_facade().hold_queue(book_id)
    return jsonify({"book_id": book_id, "queue_length": len(queue), "queue": queue})


@api.get("/holds/position/<int:book_id>/<subject_id>")
def hold_position(book_id, subject_id):
    return jsonify(get_facade().hold_position(book_id, subject_id))


@api.get("/holds/user/<subject_id>")
@require_api_key
def list_holds(subject_id):
    holds = get_facade().holds_for_subject(subject_id)
    return jsonify({"holds": holds, "count": len(holds)})


@api.post("/holds/process-available/<int:book_id>")
@require_api_key
def process_available(book_id):
    hold = get_facade().fulfill_next_hold(book_id)
    if hold is None:
        return jsonify({"message": "No holds to fulfill for this book"})
    return jsonify({"message": "Hold processed and user notified", "hold": hold})


@api.post("/holds/cleanup-expired")
@require_api_key
def cleanup_expired():
    summary = get_facade().expire_stale_holds()
    count = sum(entry["expired"] for entry in summary)
    return jsonify({"message": f"Cleaned up {count} expired holds", "count": count, "books": summary})


# ----------------- notifications -----------------

@api.post("/notifications/dispatch")
@require_api_key
def dispatch_notifications():
    sent = get_facade().dispatch_notifications()
    return jsonify({"message": "Dispatch triggered", "sent": sent})


# ----------------- app factory -----------------

def create_app(config_object=Config, facade=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    if facade is None:
        engine, SessionLocal = create_store(config_object)
        relay = build_relay(config_object, SessionLocal)
        worker = None
        if not config_object.DISPATCH_ON_COMMIT:
            # outbox drained on a background thread, off the request path
            worker = RelayWorker(relay, config_object.DISPATCH_INTERVAL_SECONDS).start()
            app.extensions["circulation_relay_worker"] = worker
        facade = CirculationFacade(SessionLocal, config_object, relay=relay, worker=worker)
    app.extensions["circulation"] = facade
    app.register_blueprint(api)

    @app.errorhandler(CirculationError)
    def handle_circulation_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(ValueError)
    def handle_value_error(exc):
        return jsonify({"error": str(exc)}), 400

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
