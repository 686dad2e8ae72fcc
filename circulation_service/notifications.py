import json
import logging
import threading

import requests
from sqlalchemy import select, update

from .db import unit_of_work
from .models import PendingNotification, utcnow

logger = logging.getLogger(__name__)

TEMPLATES = frozenset(
    {
        "borrow_request_submitted",
        "borrow_request_approved",
        "borrow_request_rejected",
        "reservation_pending",
        "reservation_approved",
        "reservation_rejected",
        "hold_placed",
        "hold_ready",
        "hold_expired",
        "overdue_notice",
    }
)


def enqueue(session, subject_id, template, context=None):
    """
    Record a notification request in the outbox. It commits (or not) with the
    state change that produced it; delivery happens later in the relay.
    """
    if template not in TEMPLATES:
        raise ValueError(f"Unknown notification template {template!r}")
    evt = PendingNotification(
        subject_id=subject_id,
        template=template,
        context=json.dumps(context or {}, default=str),
    )
    session.add(evt)
    return evt


# ----------------- dispatchers -----------------

class LoggingDispatcher:
    """Used when no notification service is configured."""

    def notify(self, subject_id, template, context):
        logger.info("Notification %s for %s: %s", template, subject_id, context)


class WebhookDispatcher:
    """POSTs each notification to an external notification service."""

    def __init__(self, base_url, api_key=None, timeout=3):
        self.url = f'{base_url.rstrip("/")}/api/notifications'
        self.api_key = api_key
        self.timeout = timeout

    def notify(self, subject_id, template, context):
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        resp = requests.post(
            self.url,
            json={"subject_id": subject_id, "template": template, "context": context},
            headers=headers,
            timeout=self.timeout,
        )
        if resp.status_code >= 300:
            raise RuntimeError(f"Notifier returned {resp.status_code}")


# ----------------- identity -----------------

class StaticIdentityProvider:
    def __init__(self, names=None):
        self.names = dict(names or {})

    def resolve_subject(self, subject_id):
        return {"displayName": self.names.get(subject_id, subject_id)}


class HttpIdentityProvider:
    """Looks the subject up on the user service (GET /api/users/<id>)."""

    def __init__(self, base_url, timeout=3):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def resolve_subject(self, subject_id):
        resp = requests.get(f"{self.base_url}/api/users/{subject_id}", timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        return {"displayName": data.get("name") or subject_id}


# ----------------- relay -----------------

class NotificationRelay:
    """
    Drains the outbox. Delivery failures are logged and recorded on the row
    for the next run; they never reach the operation that queued them.

    No store transaction is open while the dispatcher runs: a batch is
    claimed (attempts bumped) and committed, each row is delivered, and the
    outcome is written back in its own short unit.
    """

    def __init__(self, session_factory, dispatcher, identity=None, max_attempts=5):
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.identity = identity or StaticIdentityProvider()
        self.max_attempts = max_attempts
        # one drain at a time per process
        self._drain_lock = threading.Lock()

    def dispatch_pending(self, limit=100):
        """Try to send pending notifications. Returns how many went out."""
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Relay already draining; skipping")
            return 0

        sent = 0
        try:
            for evt_id, subject_id, template, raw_context, attempts in self._claim(limit):
                error = self._deliver(subject_id, template, raw_context)
                if error is not None:
                    logger.warning(
                        "Failed to send %s to %s (attempt %d): %s",
                        template,
                        subject_id,
                        attempts,
                        error,
                    )
                if self._record(evt_id, error):
                    sent += 1
        finally:
            self._drain_lock.release()

        if sent:
            logger.info("Dispatched %d notifications", sent)
        return sent

    def pending(self):
        session = self._session_factory()
        try:
            return session.execute(
                select(PendingNotification)
                .where(PendingNotification.sent_at.is_(None))
                .order_by(PendingNotification.id)
            ).scalars().all()
        finally:
            session.close()

    def _claim(self, limit):
        with unit_of_work(self._session_factory) as session:
            events = session.execute(
                select(PendingNotification)
                .where(
                    PendingNotification.sent_at.is_(None),
                    PendingNotification.attempts < self.max_attempts,
                )
                .order_by(PendingNotification.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).scalars().all()
            batch = []
            for evt in events:
                evt.attempts += 1
                batch.append((evt.id, evt.subject_id, evt.template, evt.context, evt.attempts))
        return batch

    def _deliver(self, subject_id, template, raw_context):
        """Returns None on success, else the exception."""
        try:
            context = json.loads(raw_context or "{}")
            context.setdefault("display_name", self._display_name(subject_id))
            self.dispatcher.notify(subject_id, template, context)
        except Exception as exc:
            return exc
        return None

    def _record(self, evt_id, error):
        if error is None:
            values = {"sent_at": utcnow(), "last_error": None}
        else:
            values = {"last_error": str(error)}
        with unit_of_work(self._session_factory) as session:
            result = session.execute(
                update(PendingNotification)
                .where(
                    PendingNotification.id == evt_id,
                    PendingNotification.sent_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return error is None and result.rowcount == 1

    def _display_name(self, subject_id):
        try:
            return self.identity.resolve_subject(subject_id)["displayName"]
        except Exception as exc:
            logger.warning("Could not resolve subject %s: %s", subject_id, exc)
            return subject_id


class RelayWorker:
    """
    Runs the relay on a daemon thread, every `interval` seconds or sooner
    when woken after a commit.
    """

    def __init__(self, relay, interval=5.0):
        self.relay = relay
        self.interval = interval
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is None:
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run, name="notification-relay", daemon=True
            )
            self._thread.start()
        return self

    def wake(self):
        self._wake.set()

    def stop(self, timeout=2.0):
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self):
        while not self._stop.is_set():
            try:
                self.relay.dispatch_pending()
            except Exception as exc:
                logger.warning("Background notification dispatch failed: %s", exc)
            self._wake.wait(self.interval)
            self._wake.clear()


def build_relay(config, session_factory, identity=None, dispatcher=None):
    if dispatcher is None:
        if config.NOTIFY_BASE_URL:
            dispatcher = WebhookDispatcher(
                config.NOTIFY_BASE_URL,
                api_key=config.SERVICE_API_KEY,
                timeout=config.NOTIFY_TIMEOUT_SECONDS,
            )
        else:
            dispatcher = LoggingDispatcher()
    if identity is None and config.IDENTITY_BASE_URL:
        identity = HttpIdentityProvider(
            config.IDENTITY_BASE_URL, timeout=config.NOTIFY_TIMEOUT_SECONDS
        )
    return NotificationRelay(
        session_factory,
        dispatcher,
        identity=identity,
        max_attempts=config.NOTIFY_MAX_ATTEMPTS,
    )
