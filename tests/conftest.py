import pytest

from circulation_service.config import Config
from circulation_service.db import create_store
from circulation_service.facade import CirculationFacade
from circulation_service.notifications import NotificationRelay, StaticIdentityProvider


class RecordingDispatcher:
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, subject_id, template, context):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append((subject_id, template, context))

    def templates(self, subject_id=None):
        return [t for s, t, _ in self.sent if subject_id is None or s == subject_id]


@pytest.fixture
def config(tmp_path):
    class TestConfig(Config):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'circulation.db'}"
        SERVICE_API_KEY = "test-key"
        STORE_TIMEOUT_SECONDS = 30
        LOAN_PERIOD_DAYS = 7
        RESERVATION_WINDOW_DAYS = 7
        BORROW_LIMIT = 3
        HOLD_EXPIRY_DAYS = 14
        HOLD_PICKUP_DAYS = 7
        ALLOW_DIRECT_BORROW = True
        DISPATCH_ON_COMMIT = True
        NOTIFY_BASE_URL = ""
        IDENTITY_BASE_URL = ""
        NOTIFY_MAX_ATTEMPTS = 5

    return TestConfig


@pytest.fixture
def store(config):
    engine, SessionLocal = create_store(config)
    yield SessionLocal
    engine.dispose()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def relay(store, dispatcher):
    return NotificationRelay(
        store, dispatcher, identity=StaticIdentityProvider({"alice": "Alice Example"})
    )


@pytest.fixture
def facade(config, store, relay):
    return CirculationFacade(store, config, relay=relay)


@pytest.fixture
def make_book(facade):
    def _make(total=1, title="Clean Code", author="Robert C. Martin", category="Technology"):
        return facade.add_book(
            {"title": title, "author": author, "total_copies": total, "category": category}
        )

    return _make
