"""Shared test fixtures for the scheduled sender."""
import pytest
from datetime import datetime, timedelta, timezone

from models.schemas import ContactIdentity, ScheduledMessage


NOW = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_singletons():
    from database.store_factory import reset_store
    reset_store()
    yield
    reset_store()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def contact() -> ContactIdentity:
    return ContactIdentity(name="Asha Verma", phone_number="+91 98765-43210")


@pytest.fixture
def memory_store():
    from database.store_memory import InMemoryMessageStore
    return InMemoryMessageStore()


@pytest.fixture
def schedule_payload() -> dict:
    return {
        "contact_name": "Asha Verma",
        "phone_number": "+919876543210",
        "scheduled_at": (NOW - timedelta(minutes=1)).isoformat(),
        "content": "Reminder: team sync at 10",
    }


@pytest.fixture
def make_message(contact):
    """Build a detached ScheduledMessage (not stored)."""
    def _make(message_id="m1", user_id="u1", minutes_from_now=-1, **kwargs):
        return ScheduledMessage(
            id=message_id,
            user_id=user_id,
            contact=contact,
            content=kwargs.pop("content", "hello"),
            scheduled_at=NOW + timedelta(minutes=minutes_from_now),
            **kwargs,
        )
    return _make
