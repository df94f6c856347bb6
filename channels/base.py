"""
Delivery Workers — base infrastructure shared by every delivery surface.

Provides:
- DeliveryMetrics: per-worker attempt/outcome/latency tracking
- DeliveryWorker: abstract base that borrows the user's session, runs one
  send through _do_send and always hands the session back

A worker performs exactly one attempt per call. It returns Sent or Failed
for outcomes the surface reports, and raises SessionTimeout or WorkerError
when the attempt itself could not be carried out.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

from channels.sessions import Session, SessionManager
from models.errors import SessionTimeout, WorkerError
from models.schemas import DELIVERY_OUTCOMES, MessageStatus, ScheduledMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  DELIVERY METRICS
# ══════════════════════════════════════════════════════════════

class DeliveryMetrics:
    """Tracks per-worker attempts, outcomes, errors and latency."""

    def __init__(self, worker: str):
        self.worker = worker
        self.attempts: int = 0
        self.sent: int = 0
        self.failed: int = 0
        self.worker_errors: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_outcome(self, status: MessageStatus, latency_ms: float = 0.0):
        self.attempts += 1
        if status == MessageStatus.SENT:
            self.sent += 1
        else:
            self.failed += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_error(self, error: str = ""):
        self.attempts += 1
        self.worker_errors += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        return (self.failed + self.worker_errors) / self.attempts if self.attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker": self.worker,
            "attempts": self.attempts,
            "sent": self.sent,
            "failed": self.failed,
            "worker_errors": self.worker_errors,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY WORKER — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryWorker(abc.ABC):
    """
    Base class for delivery workers.

    Subclasses implement _do_send, which receives a borrowed session and
    must not keep a reference to its handle after returning.
    """

    name: str = "base"

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions
        self.metrics = DeliveryMetrics(self.name)

    @abc.abstractmethod
    async def _do_send(self, message: ScheduledMessage, session: Session) -> MessageStatus:
        ...

    async def deliver(self, message: ScheduledMessage) -> MessageStatus:
        """
        Attempt delivery of one message on its owner's session.

        Returns MessageStatus.SENT or MessageStatus.FAILED.
        Raises SessionTimeout if the session never linked and WorkerError
        for any other failure of the attempt itself.
        """
        start = time.monotonic()
        session = None
        try:
            session = await self.sessions.acquire(message.user_id)
            status = await self._do_send(message, session)
        except (SessionTimeout, WorkerError) as e:
            self.metrics.record_error(str(e))
            raise
        except Exception as e:
            self.metrics.record_error(str(e))
            logger.error("delivery_unexpected_error", worker=self.name,
                         message_id=message.id, error=str(e))
            raise WorkerError(
                f"Unexpected delivery failure: {e}", user_id=message.user_id,
            ) from e
        finally:
            if session is not None:
                self.sessions.release(session)

        if status not in DELIVERY_OUTCOMES:
            self.metrics.record_error(f"unexpected outcome {status!r}")
            raise WorkerError(
                f"Worker returned unexpected outcome {status!r}", user_id=message.user_id,
            )

        latency = (time.monotonic() - start) * 1000
        self.metrics.record_outcome(status, latency)
        logger.info(
            "delivery_attempted",
            worker=self.name,
            message_id=message.id,
            user_id=message.user_id,
            status=status.value,
            latency_ms=round(latency, 1),
        )
        return status

    async def health_check(self) -> dict[str, Any]:
        return {
            "worker": self.name,
            "healthy": True,
            "sessions": len(self.sessions),
            "metrics": self.metrics.to_dict(),
        }
