"""
Core data models for the scheduled sender.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, AliasChoices, BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    FAILED_WORKER_ERROR = "failed_worker_error"
    CANCELED = "canceled"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_LINKING = "awaiting_linking"
    READY = "ready"
    CLOSED = "closed"


# Scheduled --(due & dispatched)--> Processing --> Sent | Failed | FailedWorkerError
# Scheduled --(user cancel)--> Canceled
ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SCHEDULED: frozenset({MessageStatus.PROCESSING, MessageStatus.CANCELED}),
    MessageStatus.PROCESSING: frozenset({
        MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.FAILED_WORKER_ERROR,
    }),
    MessageStatus.SENT: frozenset(),
    MessageStatus.FAILED: frozenset(),
    MessageStatus.FAILED_WORKER_ERROR: frozenset(),
    MessageStatus.CANCELED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    MessageStatus.SENT, MessageStatus.FAILED,
    MessageStatus.FAILED_WORKER_ERROR, MessageStatus.CANCELED,
})

# Outcomes a delivery worker may legitimately return.
DELIVERY_OUTCOMES = frozenset({MessageStatus.SENT, MessageStatus.FAILED})


def can_transition(from_status: MessageStatus, to_status: MessageStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


# ──────────────────────────────────────────────────────────────
#  Contact
# ──────────────────────────────────────────────────────────────

_PHONE_CHARS = re.compile(r"^[\d\s+\-().]+$")


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone)


def _check_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("contact name is required")
    return value


def _check_phone(value: str) -> str:
    value = value.strip()
    if not value or not _PHONE_CHARS.match(value) or not normalize_phone(value):
        raise ValueError("a phone number is required")
    return value


ContactName = Annotated[str, AfterValidator(_check_name)]
PhoneNumber = Annotated[str, AfterValidator(_check_phone)]


class ContactIdentity(BaseModel):
    name: ContactName
    phone_number: PhoneNumber

    @property
    def digits(self) -> str:
        return normalize_phone(self.phone_number)


# ──────────────────────────────────────────────────────────────
#  Scheduled message
# ──────────────────────────────────────────────────────────────

class StatusChange(BaseModel):
    """Immutable log of a single status transition."""
    from_status: MessageStatus
    to_status: MessageStatus
    at: datetime = Field(default_factory=utcnow)


class ScheduledMessage(BaseModel):
    id: str
    user_id: str
    contact: ContactIdentity
    content: str
    scheduled_at: datetime
    status: MessageStatus = MessageStatus.SCHEDULED
    status_history: list[StatusChange] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("scheduled_at", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        return self.status == MessageStatus.SCHEDULED and self.scheduled_at <= ensure_utc(now)


class ScheduleRequest(BaseModel):
    """
    Inbound schedule request, validated before anything is stored.
    Accepts the browser extension's camelCase field names as well.
    """
    contact_name: ContactName = Field(
        validation_alias=AliasChoices("contact_name", "contactName"))
    phone_number: PhoneNumber = Field(
        validation_alias=AliasChoices("phone_number", "phoneNumber"))
    scheduled_at: datetime = Field(
        validation_alias=AliasChoices("scheduled_at", "scheduledDateTime"))
    content: str = Field(
        validation_alias=AliasChoices("content", "messageContent"))

    @field_validator("content")
    @classmethod
    def _content_present(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("message content is required")
        return value

    @field_validator("scheduled_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def contact(self) -> ContactIdentity:
        return ContactIdentity(name=self.contact_name, phone_number=self.phone_number)


class SessionInfo(BaseModel):
    """Read-only view of a user's automation session."""
    user_id: str
    state: SessionState
    borrowed: bool = False
    data_dir: str = ""
    deliveries: int = 0
    created_at: Optional[datetime] = None
    linked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
