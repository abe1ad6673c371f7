"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any wadash module is imported,
so the module-level settings, database engine and logging pick them up.
Twilio credentials are left empty: the app runs in demo mode.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="wadash-test-")

os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PAGE_DELAY_SECONDS"] = "0"
os.environ["BACKUP_DIR"] = os.path.join(_TEST_DIR, "backups")

# Clear settings cache before any app imports to ensure test env vars are used
from wadash.config import get_settings
get_settings.cache_clear()

from wadash.schemas import Message  # noqa: E402

SERVICE_NUMBER = "whatsapp:+14155238886"
BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def build_message(
    sid: str,
    contact: str,
    direction: str = "inbound",
    seconds: int = None,
    body: str = None,
    created_seconds: int = None,
) -> Message:
    """
    Build a message exchanged between the service number and ``contact``.

    ``seconds`` / ``created_seconds`` are offsets from BASE_TIME; None leaves
    the timestamp unset.
    """
    inbound = direction == "inbound"
    return Message(
        sid=sid,
        from_=contact if inbound else SERVICE_NUMBER,
        to=SERVICE_NUMBER if inbound else contact,
        body=body if body is not None else f"body of {sid}",
        status="received" if inbound else "delivered",
        direction=direction,
        date_sent=BASE_TIME + timedelta(seconds=seconds) if seconds is not None else None,
        date_created=BASE_TIME + timedelta(seconds=created_seconds) if created_seconds is not None else None,
    )


@pytest.fixture
def make_message():
    return build_message


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client with a fresh database, cache and backup directory for each test."""
    from fastapi.testclient import TestClient

    from wadash.config import settings
    from wadash.main import app
    from wadash.storage import Base, engine

    monkeypatch.setattr(settings, "BACKUP_DIR", str(tmp_path / "backups"))
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)
