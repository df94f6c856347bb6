"""
InMemoryMessageStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with FileMessageStore
  - Atomic per-id status updates: every method body runs without an
    await point, so a single event loop never interleaves two writes
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseMessageStore
from models.errors import InvalidTransitionError, MessageNotFoundError
from models.schemas import (
    ContactIdentity, MessageStatus, ScheduledMessage, StatusChange,
    can_transition, ensure_utc, utcnow,
)

logger = structlog.get_logger()


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class InMemoryMessageStore(BaseMessageStore):
    """
    In-memory store. Hands out deep copies so callers can never mutate
    stored state except through set_status / compare_and_set_status.
    """

    def __init__(self):
        self._messages: dict[str, ScheduledMessage] = {}     # id → message
        logger.info("inmemory_store_initialized")

    # ── Messages ──────────────────────────────────────────

    async def create_message(
        self, user_id: str, contact: ContactIdentity, content: str, scheduled_at: datetime,
    ) -> ScheduledMessage:
        message = ScheduledMessage(
            id=_new_id(), user_id=user_id, contact=contact,
            content=content, scheduled_at=scheduled_at,
        )
        self._messages[message.id] = message
        self._on_change()
        return message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> Optional[ScheduledMessage]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_messages(self, user_id: str = None) -> list[ScheduledMessage]:
        messages = [
            m for m in self._messages.values()
            if user_id is None or m.user_id == user_id
        ]
        messages.sort(key=lambda m: m.scheduled_at, reverse=True)
        return [m.model_copy(deep=True) for m in messages]

    async def find_due(self, now: datetime) -> list[ScheduledMessage]:
        now = ensure_utc(now)
        return [
            m.model_copy(deep=True) for m in self._messages.values()
            if m.is_due(now)
        ]

    # ── Status ────────────────────────────────────────────

    async def set_status(self, message_id: str, status: MessageStatus) -> ScheduledMessage:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        self._apply_status(message, status)
        self._on_change()
        return message.model_copy(deep=True)

    async def compare_and_set_status(
        self, message_id: str, expected: MessageStatus, status: MessageStatus,
    ) -> bool:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        if message.status != expected:
            return False
        self._apply_status(message, status)
        self._on_change()
        return True

    def _apply_status(self, message: ScheduledMessage, status: MessageStatus) -> None:
        if not can_transition(message.status, status):
            raise InvalidTransitionError(message.id, message.status, status)
        now = utcnow()
        message.status_history.append(
            StatusChange(from_status=message.status, to_status=status, at=now)
        )
        message.status = status
        message.updated_at = now

    def _on_change(self) -> None:
        """Hook for persistent subclasses."""

    # ── Stats (for debugging) ─────────────────────────────

    async def stats(self) -> dict[str, Any]:
        counts = Counter(m.status.value for m in self._messages.values())
        return {
            "messages": len(self._messages),
            **{status.value: counts.get(status.value, 0) for status in MessageStatus},
        }
