"""
Delivery Scheduler — polls the store for due messages and dispatches them.

Every poll_interval_s the loop runs one tick:

  find_due(now) ──▶ filter (Scheduled, due, not in flight) ──▶ oldest first
        │
        ▼  per message, while dispatch capacity remains
  in-flight add ──▶ Scheduled → Processing (compare-and-set) ──▶ spawn task
                                                                    │
  in-flight discard ◀── write Sent | Failed | FailedWorkerError ◀───┘

A tick never waits for a delivery. Each dispatch is its own task, so a slow
send or a session that is still linking only holds up its own message.
No retries: a message leaves Processing exactly once.

Capacity is counted in users, not tasks: max_concurrent_deliveries users
may have dispatches running, and each of them may have up to that many
messages queued on its session. If the final status write fails twice the
in-flight marker stays and the outcome is written again on the next tick.
"""
from __future__ import annotations

import asyncio
import functools
import structlog
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional

from channels.base import DeliveryWorker
from database.store_base import BaseMessageStore
from models.errors import SessionTimeout, WorkerError
from models.schemas import (
    DELIVERY_OUTCOMES, MessageStatus, ScheduledMessage, ensure_utc, utcnow,
)
from scheduler.inflight import InFlightSet

logger = structlog.get_logger()


class DeliveryScheduler:
    """
    Usage:
        scheduler = DeliveryScheduler(store, worker, poll_interval_s=10)
        await scheduler.start()        # returns immediately, loop runs as a task
        ...
        await scheduler.stop()         # running deliveries finish on their own
    """

    def __init__(
        self,
        store: BaseMessageStore,
        worker: DeliveryWorker,
        inflight: InFlightSet = None,
        poll_interval_s: float = 10.0,
        max_concurrent_deliveries: int = 5,
        delivery_timeout_s: float = 120.0,
        eager_dispatch: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.worker = worker
        self.inflight = inflight if inflight is not None else InFlightSet()
        self.poll_interval_s = poll_interval_s
        self.max_concurrent_deliveries = max(1, max_concurrent_deliveries)
        self.delivery_timeout_s = delivery_timeout_s
        self.eager_dispatch = eager_dispatch
        self.clock = clock

        self._tasks: dict[str, asyncio.Task] = {}     # message id → dispatch task
        self._task_users: dict[str, str] = {}         # message id → user id
        self._unrecorded: dict[str, MessageStatus] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._running = False
        self._ticks = 0
        self._dispatched = 0
        self._outcomes: Counter = Counter()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def capacity(self) -> int:
        """Free dispatch slots. A slot is one user with running dispatches."""
        return max(0, self.max_concurrent_deliveries - len(set(self._task_users.values())))

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self, now: datetime = None) -> list[str]:
        """Dispatch every due message that fits in the current capacity. Returns their ids."""
        now = ensure_utc(now or self.clock())
        self._ticks += 1

        if self._unrecorded:
            await self._retry_unrecorded()

        due = await self.store.find_due(now)
        candidates = sorted(
            (m for m in due if m.is_due(now) and m.id not in self.inflight),
            key=lambda m: m.scheduled_at,
        )

        dispatched: list[str] = []
        deferred = 0
        for message in candidates:
            # a user's later messages queue behind the session lock without a new slot,
            # so one slow or unlinked session cannot starve the other users
            per_user = Counter(self._task_users.values())
            if per_user[message.user_id] == 0 and self.capacity <= 0:
                deferred += 1
                continue
            if per_user[message.user_id] >= self.max_concurrent_deliveries:
                deferred += 1
                continue
            if not self.inflight.add(message.id):
                continue

            try:
                claimed = await self.store.compare_and_set_status(
                    message.id, MessageStatus.SCHEDULED, MessageStatus.PROCESSING,
                )
            except Exception:
                self.inflight.discard(message.id)
                raise
            if not claimed:
                # canceled between find_due and now
                self.inflight.discard(message.id)
                logger.info("dispatch_skipped", message_id=message.id, reason="not_scheduled")
                continue

            message.status = MessageStatus.PROCESSING
            task = asyncio.create_task(self._dispatch(message), name=f"dispatch-{message.id}")
            self._tasks[message.id] = task
            self._task_users[message.id] = message.user_id
            task.add_done_callback(functools.partial(self._dispatch_done, message.id))
            dispatched.append(message.id)
            self._dispatched += 1
            logger.info("message_dispatched",
                        message_id=message.id,
                        user_id=message.user_id,
                        scheduled_at=message.scheduled_at.isoformat())

        if deferred:
            logger.info("dispatch_capacity_reached",
                        active=len(self._tasks),
                        active_users=len(set(self._task_users.values())),
                        deferred=deferred)
        if due:
            logger.debug("scheduler_tick", due=len(due), dispatched=len(dispatched))
        return dispatched

    # ── Dispatch ──────────────────────────────────────────────

    async def _dispatch(self, message: ScheduledMessage) -> MessageStatus:
        status = MessageStatus.FAILED_WORKER_ERROR
        try:
            try:
                if self.delivery_timeout_s and self.delivery_timeout_s > 0:
                    result = await asyncio.wait_for(
                        self.worker.deliver(message), timeout=self.delivery_timeout_s,
                    )
                else:
                    result = await self.worker.deliver(message)

                if result in DELIVERY_OUTCOMES:
                    status = result
                else:
                    logger.error("delivery_unexpected_result",
                                 message_id=message.id, result=repr(result))
            except SessionTimeout as e:
                logger.warning("delivery_session_timeout",
                               message_id=message.id, user_id=message.user_id, error=str(e))
            except WorkerError as e:
                logger.error("delivery_worker_error",
                             message_id=message.id, user_id=message.user_id,
                             error=str(e), retryable=e.retryable)
            except asyncio.TimeoutError:
                logger.error("delivery_timed_out",
                             message_id=message.id, timeout_s=self.delivery_timeout_s)
            except Exception as e:
                logger.error("delivery_unexpected_error",
                             message_id=message.id, error=str(e), exc_info=True)

            self._outcomes[status.value] += 1
            await self._record_outcome(message.id, status)
            return status
        finally:
            # only after the status write, so the next tick cannot pick it up again;
            # an unwritten outcome keeps its marker until a later tick writes it
            if message.id not in self._unrecorded:
                self.inflight.discard(message.id)

    async def _record_outcome(self, message_id: str, status: MessageStatus,
                              attempts: int = 2) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                await self.store.set_status(message_id, status)
            except Exception as e:
                logger.error("status_write_failed",
                             message_id=message_id, status=status.value,
                             attempt=attempt, error=str(e), exc_info=True)
                continue
            self._unrecorded.pop(message_id, None)
            logger.info("delivery_completed", message_id=message_id, status=status.value)
            return True
        self._unrecorded[message_id] = status
        return False

    async def _retry_unrecorded(self) -> None:
        """Write outcomes whose status write failed during dispatch."""
        for message_id, status in list(self._unrecorded.items()):
            try:
                current = await self.store.get_message(message_id)
            except Exception as e:
                logger.error("unrecorded_outcome_lookup_failed",
                             message_id=message_id, error=str(e))
                continue
            if current is None or current.status != MessageStatus.PROCESSING:
                self._unrecorded.pop(message_id, None)
            elif not await self._record_outcome(message_id, status, attempts=1):
                continue
            self.inflight.discard(message_id)

    def _dispatch_done(self, message_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(message_id) is task:
            del self._tasks[message_id]
            self._task_users.pop(message_id, None)

    async def join(self) -> None:
        """Wait for every running dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ── Hooks from the message service ────────────────────────

    def schedule(self, message: ScheduledMessage) -> None:
        """A message was created. The next tick picks it up; eager mode wakes the loop."""
        if self.eager_dispatch and self._running and message.is_due(self.clock()):
            logger.debug("scheduler_woken", message_id=message.id)
            self._wake.set()

    def cancel(self, message: ScheduledMessage) -> None:
        """Drop the in-flight marker. A running attempt is not aborted."""
        if self.inflight.discard(message.id):
            logger.info("inflight_marker_cleared", message_id=message.id)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._loop_task = asyncio.create_task(self._run(), name="delivery-scheduler")
        logger.info("scheduler_started",
                    poll_interval_s=self.poll_interval_s,
                    max_concurrent=self.max_concurrent_deliveries,
                    eager=self.eager_dispatch)

    async def stop(self, drain: bool = False) -> None:
        """Stop polling. With drain=True, also wait for running deliveries."""
        if self._loop_task is None:
            return
        self._running = False
        self._wake.set()
        # let an in-progress tick finish so no claimed message is left without a task
        await self._loop_task
        self._loop_task = None
        if drain:
            await self.join()
        logger.info("scheduler_stopped", active_dispatches=len(self._tasks), drained=drain)

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_tick_failed", error=str(e), exc_info=True)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "poll_interval_s": self.poll_interval_s,
            "max_concurrent_deliveries": self.max_concurrent_deliveries,
            "in_flight": self.inflight.snapshot(),
            "active_dispatches": len(self._tasks),
            "active_users": len(set(self._task_users.values())),
            "unrecorded_outcomes": sorted(self._unrecorded),
            "ticks": self._ticks,
            "dispatched": self._dispatched,
            "outcomes": dict(self._outcomes),
        }
