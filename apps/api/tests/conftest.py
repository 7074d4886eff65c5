"""
Pytest configuration and fixtures

Tests run against a throwaway SQLite database that is upgraded to the
Alembic head once per session. Every table is emptied after each test, so
code under test may commit freely (the dispatcher and the in-app channel
do, from worker threads).
"""
import pytest
import sys
import os
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

# Point the app at a private database before anything imports core.config
_TEST_DB_DIR = tempfile.mkdtemp(prefix="coach-engagement-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"
for _gateway in ("SMS_GATEWAY_URL", "WEB_PUSH_GATEWAY_URL"):
    os.environ.pop(_gateway, None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture(scope="session", autouse=True)
def _ensure_db_schema_is_at_head():
    """Create the schema through the real migrations, not create_all."""
    try:
        from alembic import command
        from alembic.config import Config

        api_root = Path(__file__).resolve().parents[1]
        cfg = Config(str(api_root / "alembic.ini"))
        # Alembic's script_location in alembic.ini is relative ("alembic")
        # so we set it explicitly.
        cfg.set_main_option("script_location", str(api_root / "alembic"))
        cfg.attributes["configure_logger"] = False
        command.upgrade(cfg, "head")
    except Exception as e:
        # Tests should fail loudly if migrations cannot be applied.
        raise RuntimeError(f"Failed to upgrade DB to Alembic head: {e}") from e


from core.database import Base, SessionLocal, engine  # noqa: E402
from services.engagement.channels import ChannelError, ChannelHandlers, ChannelSender  # noqa: E402
from services.engagement.types import Channel  # noqa: E402
import models  # noqa: E402

# Tuesday 12:00 UTC: inside default active hours, outside default quiet hours
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function")
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def add_activity(db_session):
    """Insert a ClientActivityEvent row and commit it."""

    def _add(client_id, timestamp, type="log", category="general", title="Logged", description="", metadata=None):
        row = models.ClientActivityEvent(
            id=str(uuid.uuid4()),
            client_id=client_id,
            timestamp=timestamp,
            type=type,
            category=category,
            title=title,
            description=description,
            event_metadata=metadata,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _add


class RecordingSender(ChannelSender):
    """Channel sender double: records calls, optionally fails."""

    def __init__(self, channel: Channel, fail: bool = False, retryable: bool = True):
        self.channel = channel
        self.fail = fail
        self.retryable = retryable
        self.calls = []

    def send(self, client_id, title, body):
        self.calls.append({"client_id": client_id, "title": title, "body": body})
        if self.fail:
            error = ChannelError(f"{self.channel.value} unavailable")
            error.retryable = self.retryable
            raise error


@pytest.fixture
def senders():
    return {
        Channel.SMS: RecordingSender(Channel.SMS),
        Channel.WEB_PUSH: RecordingSender(Channel.WEB_PUSH),
        Channel.IN_APP: RecordingSender(Channel.IN_APP),
    }


@pytest.fixture
def handlers(senders):
    return ChannelHandlers(
        sms=senders[Channel.SMS],
        web_push=senders[Channel.WEB_PUSH],
        in_app=senders[Channel.IN_APP],
    )


class SlowSender(ChannelSender):
    """Keeps a send in flight long enough for a second dispatch to overlap it."""

    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self.calls = []

    def send(self, client_id, title, body):
        self.calls.append(client_id)
        time.sleep(self.delay)


@pytest.fixture
def slow_sender():
    return SlowSender()
