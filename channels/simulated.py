"""
Simulated delivery — no browser, no network. Links instantly and logs sends.
Used for local development, demos and tests.

The opened/closed/sent lists keep only the most recent `history_limit`
entries so a long-running dev server does not grow without bound.
"""
from __future__ import annotations

import asyncio
import structlog
from pathlib import Path
from typing import Any

from channels.base import DeliveryWorker
from channels.sessions import Session, SessionDriver, SessionManager
from models.schemas import MessageStatus, ScheduledMessage

logger = structlog.get_logger()


def _remember(history: list[str], item: str, limit: int) -> None:
    history.append(item)
    if len(history) > limit:
        del history[:-limit]


class SimulatedDriver(SessionDriver):

    history_limit = 500

    def __init__(self):
        self.opened: list[str] = []
        self.closed: list[str] = []

    async def open(self, user_id: str, data_dir: Path) -> dict[str, Any]:
        _remember(self.opened, user_id, self.history_limit)
        return {"user_id": user_id, "data_dir": str(data_dir)}

    async def wait_until_linked(self, handle: Any) -> None:
        return None

    async def close(self, handle: Any) -> None:
        _remember(self.closed, handle["user_id"], self.history_limit)


class SimulatedWorker(DeliveryWorker):
    """Pretends to send; every attempt ends Sent."""

    name = "simulated"
    history_limit = 500

    def __init__(self, sessions: SessionManager, latency_s: float = 0.0):
        super().__init__(sessions)
        self.latency_s = latency_s
        self.sent: list[str] = []

    async def _do_send(self, message: ScheduledMessage, session: Session) -> MessageStatus:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        _remember(self.sent, message.id, self.history_limit)
        logger.info(
            "simulated_message_sent",
            message_id=message.id,
            user_id=message.user_id,
            to=message.contact.name,
            phone=message.contact.digits,
            content_length=len(message.content),
        )
        return MessageStatus.SENT
