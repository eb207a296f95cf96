import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")
# Config classes read these at import time
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
# base64 of 32 bytes
os.environ.setdefault("ENCRYPTION_KEY", "YWFh" * 10 + "YWE=")

import pytest
from paydesk import create_app
from paydesk.extensions import db, NOTIFIER_KEY, RATE_LIMITER_KEY
from paydesk.services.rate_limit import InMemoryCounterStore


class RecordingSink:
    """Stands in for Pushover; keeps every notification it is handed."""

    configured = True

    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)
        return True


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        APP_BASE_URL="http://example.test",
        DASHBOARD_BASE_URL="https://dash.example.test",
        STRIPE_WEBHOOK_SECRET=os.environ["STRIPE_WEBHOOK_SECRET"],
        ENCRYPTION_KEY=os.environ["ENCRYPTION_KEY"],
        FORMSPREE_WEBHOOK_SECRET="hook_secret_test",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

@pytest.fixture(autouse=True)
def _fresh_limiter(app):
    # Session-scoped app: counters must not leak between tests
    limiter = app.extensions[RATE_LIMITER_KEY]
    limiter.storage = None
    limiter.fallback = InMemoryCounterStore()
    yield limiter

@pytest.fixture(autouse=True)
def sink(app):
    notifier = app.extensions[NOTIFIER_KEY]
    original = notifier.sink
    recording = RecordingSink()
    notifier.sink = recording
    yield recording
    notifier.sink = original
