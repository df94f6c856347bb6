"""
Abstract Message Store — Interface for all storage backends.

Implementations:
  - InMemoryMessageStore (dict-based, single-process, no persistence)
  - FileMessageStore     (JSON file on disk, single-process, durable)

The scheduler only reads due messages and writes status; it never owns
persistence. Status writes are atomic per id and validated against the
message state machine, so a status can never regress.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import ContactIdentity, MessageStatus, ScheduledMessage


class BaseMessageStore(ABC):
    """Interface that all message store backends must implement."""

    @abstractmethod
    async def create_message(
        self, user_id: str, contact: ContactIdentity, content: str, scheduled_at: datetime,
    ) -> ScheduledMessage:
        """Persist a new message in status Scheduled and assign its id."""
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def list_messages(self, user_id: str = None) -> list[ScheduledMessage]:
        """Messages ordered newest scheduled_at first."""
        ...

    @abstractmethod
    async def find_due(self, now: datetime) -> list[ScheduledMessage]:
        """Scheduled messages whose scheduled_at <= now. Returns fresh copies."""
        ...

    @abstractmethod
    async def set_status(self, message_id: str, status: MessageStatus) -> ScheduledMessage:
        """
        Move a message to `status`.

        Raises MessageNotFoundError for unknown ids and InvalidTransitionError
        for edges outside the state machine.
        """
        ...

    @abstractmethod
    async def compare_and_set_status(
        self, message_id: str, expected: MessageStatus, status: MessageStatus,
    ) -> bool:
        """Move to `status` only if the current status is `expected`."""
        ...

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...
