"""
Session Manager — one persistent automation session per user.

Lifecycle:
  uninitialized → awaiting_linking (driver opened a handle, e.g. a browser
  profile showing the link/QR screen) → ready (linked) → closed (revoked).

- Sessions are created lazily on the first delivery for a user and survive
  any number of deliveries, successful or not.
- Linking is single-flight: concurrent acquires for one user share a
  single linking future, so they observe the same outcome.
- Exactly one delivery borrows a user's handle at a time. acquire() takes
  the session lock, release() gives it back; there is no other locking.
- Each user gets a durable data directory `{base_dir}/user_{user_id}`,
  created on first use and never deleted here.
"""
from __future__ import annotations

import abc
import asyncio
import functools
import re
import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from models.errors import SessionTimeout, WorkerError
from models.schemas import SessionInfo, SessionState, utcnow

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SESSION DRIVER
# ══════════════════════════════════════════════════════════════

class SessionDriver(abc.ABC):
    """Opens, links and closes the opaque handle behind a session."""

    @abc.abstractmethod
    async def open(self, user_id: str, data_dir: Path) -> Any:
        ...

    @abc.abstractmethod
    async def wait_until_linked(self, handle: Any) -> None:
        """Return once the handle is linked. The manager applies the timeout."""
        ...

    @abc.abstractmethod
    async def close(self, handle: Any) -> None:
        ...

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  SESSION
# ══════════════════════════════════════════════════════════════

class Session:
    """A user's session. The handle is only valid between acquire and release."""

    def __init__(self, user_id: str, data_dir: Path):
        self.user_id = user_id
        self.data_dir = data_dir
        self.state = SessionState.UNINITIALIZED
        self.handle: Any = None
        self.created_at: datetime = utcnow()
        self.linked_at: Optional[datetime] = None
        self.last_used_at: Optional[datetime] = None
        self.deliveries: int = 0
        self._lock = asyncio.Lock()

    @property
    def borrowed(self) -> bool:
        return self._lock.locked()

    def info(self) -> SessionInfo:
        return SessionInfo(
            user_id=self.user_id,
            state=self.state,
            borrowed=self.borrowed,
            data_dir=str(self.data_dir),
            deliveries=self.deliveries,
            created_at=self.created_at,
            linked_at=self.linked_at,
            last_used_at=self.last_used_at,
        )

    def __repr__(self):
        return f"<Session user={self.user_id} state={self.state.value} borrowed={self.borrowed}>"


# ══════════════════════════════════════════════════════════════
#  SESSION MANAGER
# ══════════════════════════════════════════════════════════════

class SessionManager:
    """
    Pool of per-user sessions.

    Usage:
        manager = SessionManager(driver, base_dir="./sessions")
        session = await manager.acquire("user-1")
        try:
            ...  # use session.handle
        finally:
            manager.release(session)
    """

    def __init__(
        self,
        driver: SessionDriver,
        base_dir: str = "./sessions",
        linking_timeout_s: float = 60.0,
    ):
        self.driver = driver
        self.base_dir = Path(base_dir)
        self.linking_timeout_s = linking_timeout_s
        self._sessions: dict[str, Session] = {}
        self._linking: dict[str, asyncio.Future] = {}

    def session_dir(self, user_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_\-]", "_", str(user_id))
        return self.base_dir / f"user_{safe}"

    # ── Acquire / release ─────────────────────────────────────

    async def acquire(self, user_id: str) -> Session:
        """
        Borrow the user's session, creating and linking it if needed.

        Raises SessionTimeout if linking does not finish within
        linking_timeout_s, WorkerError if the session cannot be opened or
        is revoked while this caller waits.
        """
        while True:
            session = self._sessions.get(user_id)
            if session is None:
                session = Session(user_id, self.session_dir(user_id))
                self._sessions[user_id] = session
                logger.info("session_created", user_id=user_id, data_dir=str(session.data_dir))

            if session.state != SessionState.READY:
                await self._wait_for_link(session)

            await session._lock.acquire()
            if session.state == SessionState.READY:
                return session
            session._lock.release()

            if session.state == SessionState.CLOSED:
                raise WorkerError(f"Session for user {user_id} was revoked", user_id=user_id)
            # unlinked while queued for the handle: wait for relinking

    def release(self, session: Session) -> None:
        """Return the session to the idle pool. It is not torn down."""
        if not session._lock.locked():
            logger.warning("session_release_unborrowed", user_id=session.user_id)
            return
        session.last_used_at = utcnow()
        session.deliveries += 1
        session._lock.release()

    @asynccontextmanager
    async def session(self, user_id: str) -> AsyncIterator[Session]:
        session = await self.acquire(user_id)
        try:
            yield session
        finally:
            self.release(session)

    def mark_unlinked(self, session: Session) -> None:
        """The surface reports it is logged out; the next acquire waits for relinking."""
        if session.state == SessionState.READY:
            session.state = SessionState.AWAITING_LINKING
            session.linked_at = None
            logger.warning("session_unlinked", user_id=session.user_id)

    # ── Linking ───────────────────────────────────────────────

    async def _wait_for_link(self, session: Session) -> None:
        user_id = session.user_id
        fut = self._linking.get(user_id)
        if fut is None:
            fut = asyncio.ensure_future(self._link(session))
            self._linking[user_id] = fut
            fut.add_done_callback(functools.partial(self._linking_done, user_id))
        else:
            logger.debug("session_linking_joined", user_id=user_id)

        try:
            # shielded: one waiter timing out must not cancel the shared link
            await asyncio.shield(fut)
        except asyncio.CancelledError:
            if fut.cancelled():
                raise WorkerError(
                    f"Session for user {user_id} was revoked during linking", user_id=user_id,
                ) from None
            raise

    def _linking_done(self, user_id: str, fut: asyncio.Future) -> None:
        if self._linking.get(user_id) is fut:
            del self._linking[user_id]
        if not fut.cancelled():
            fut.exception()  # consumed here so an unawaited failure is not reported twice

    async def _link(self, session: Session) -> None:
        user_id = session.user_id
        if session.handle is None:
            session.data_dir.mkdir(parents=True, exist_ok=True)
            try:
                session.handle = await self.driver.open(user_id, session.data_dir)
            except Exception as e:
                logger.error("session_open_failed", user_id=user_id, error=str(e))
                raise WorkerError(
                    f"Could not open session for user {user_id}: {e}",
                    user_id=user_id, retryable=True,
                ) from e
            session.state = SessionState.AWAITING_LINKING
            logger.info("session_awaiting_linking", user_id=user_id)

        try:
            await asyncio.wait_for(
                self.driver.wait_until_linked(session.handle),
                timeout=self.linking_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("session_linking_timeout", user_id=user_id,
                           timeout_s=self.linking_timeout_s)
            raise SessionTimeout(user_id, self.linking_timeout_s) from None
        except Exception as e:
            logger.error("session_linking_failed", user_id=user_id, error=str(e))
            raise WorkerError(
                f"Session for user {user_id} failed while linking: {e}", user_id=user_id,
            ) from e

        session.state = SessionState.READY
        session.linked_at = utcnow()
        logger.info("session_ready", user_id=user_id)

    # ── Administration ────────────────────────────────────────

    async def revoke(self, user_id: str) -> bool:
        """
        Destroy a user's session: waits for the current borrower, closes the
        handle and drops it from the pool. The data directory is kept.
        """
        session = self._sessions.pop(user_id, None)
        if session is None:
            return False

        fut = self._linking.pop(user_id, None)
        if fut is not None and not fut.done():
            fut.cancel()

        async with session._lock:
            await self._close(session)
        logger.info("session_revoked", user_id=user_id)
        return True

    async def shutdown(self) -> None:
        """Close every handle at process exit."""
        for fut in list(self._linking.values()):
            if not fut.done():
                fut.cancel()
        self._linking.clear()

        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._close(session)
        try:
            await self.driver.shutdown()
        except Exception as e:
            logger.warning("session_driver_shutdown_failed", error=str(e))
        logger.info("session_manager_shutdown", closed=len(sessions))

    async def _close(self, session: Session) -> None:
        session.state = SessionState.CLOSED
        handle, session.handle = session.handle, None
        if handle is None:
            return
        try:
            await self.driver.close(handle)
        except Exception as e:
            logger.warning("session_close_failed", user_id=session.user_id, error=str(e))

    # ── Views ─────────────────────────────────────────────────

    def get(self, user_id: str) -> Optional[SessionInfo]:
        session = self._sessions.get(user_id)
        return session.info() if session else None

    def snapshot(self) -> list[SessionInfo]:
        return [s.info() for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)
