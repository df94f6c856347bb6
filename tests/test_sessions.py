"""Tests for the per-user Session Manager: linking, borrowing, revocation."""
import asyncio
import pytest

from channels.sessions import SessionDriver, SessionManager
from models.errors import SessionTimeout, WorkerError
from models.schemas import SessionState


class FakeDriver(SessionDriver):
    """Driver whose linking is controlled by an event."""

    def __init__(self, linked=True, fail_open=False, fail_link=False):
        self.linked = asyncio.Event()
        if linked:
            self.linked.set()
        self.fail_open = fail_open
        self.fail_link = fail_link
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.shut_down = False

    async def open(self, user_id, data_dir):
        self.opened.append(user_id)
        if self.fail_open:
            raise RuntimeError("chromium not installed")
        return {"user_id": user_id, "data_dir": data_dir}

    async def wait_until_linked(self, handle):
        if self.fail_link:
            raise RuntimeError("page crashed")
        await self.linked.wait()

    async def close(self, handle):
        self.closed.append(handle["user_id"])

    async def shutdown(self):
        self.shut_down = True


def make_manager(tmp_path, driver, timeout=1.0):
    return SessionManager(driver, base_dir=str(tmp_path / "sessions"), linking_timeout_s=timeout)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_first_acquire_links(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)

        session = await manager.acquire("u1")
        assert session.state == SessionState.READY
        assert session.borrowed
        assert session.handle == {"user_id": "u1", "data_dir": session.data_dir}
        assert session.data_dir == tmp_path / "sessions" / "user_u1"
        assert session.data_dir.is_dir()
        assert session.linked_at is not None

        manager.release(session)
        assert not session.borrowed
        assert session.deliveries == 1
        assert session.last_used_at is not None

    @pytest.mark.asyncio
    async def test_session_reused_across_deliveries(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        first = await manager.acquire("u1")
        manager.release(first)
        second = await manager.acquire("u1")
        manager.release(second)

        assert first is second
        assert driver.opened == ["u1"]
        assert driver.closed == []

    @pytest.mark.asyncio
    async def test_sessions_are_per_user(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        a = await manager.acquire("u1")
        b = await manager.acquire("u2")
        assert a is not b
        assert sorted(driver.opened) == ["u1", "u2"]
        assert len(manager) == 2

    @pytest.mark.asyncio
    async def test_exclusive_borrow(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        held = await manager.acquire("u1")

        waiter = asyncio.create_task(manager.acquire("u1"))
        await asyncio.sleep(0.02)
        assert not waiter.done()

        manager.release(held)
        second = await asyncio.wait_for(waiter, 1)
        assert second is held
        manager.release(second)

    @pytest.mark.asyncio
    async def test_release_unborrowed_is_noop(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        session = await manager.acquire("u1")
        manager.release(session)
        manager.release(session)
        assert session.deliveries == 1

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        with pytest.raises(ValueError):
            async with manager.session("u1") as session:
                assert session.borrowed
                raise ValueError("send failed")
        assert not session.borrowed

    def test_session_dir_is_sanitized(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        assert manager.session_dir("../evil").name == "user____evil"


class TestLinking:
    @pytest.mark.asyncio
    async def test_timeout_raises_and_keeps_handle(self, tmp_path):
        driver = FakeDriver(linked=False)
        manager = make_manager(tmp_path, driver, timeout=0.05)

        with pytest.raises(SessionTimeout) as exc:
            await manager.acquire("u1")
        assert exc.value.user_id == "u1"
        assert exc.value.timeout_s == 0.05

        info = manager.get("u1")
        assert info.state == SessionState.AWAITING_LINKING
        assert not info.borrowed
        assert driver.closed == []

    @pytest.mark.asyncio
    async def test_single_flight_shares_outcome(self, tmp_path):
        driver = FakeDriver(linked=False)
        manager = make_manager(tmp_path, driver, timeout=0.05)

        results = await asyncio.gather(
            *(manager.acquire("u1") for _ in range(3)), return_exceptions=True,
        )
        assert all(isinstance(r, SessionTimeout) for r in results)
        assert driver.opened == ["u1"]

    @pytest.mark.asyncio
    async def test_concurrent_acquires_link_once(self, tmp_path):
        driver = FakeDriver(linked=False)
        manager = make_manager(tmp_path, driver, timeout=1.0)

        tasks = [asyncio.create_task(manager.acquire("u1")) for _ in range(2)]
        await asyncio.sleep(0.02)
        driver.linked.set()

        first = await asyncio.wait_for(tasks[0], 1)
        manager.release(first)
        second = await asyncio.wait_for(tasks[1], 1)
        manager.release(second)
        assert first is second
        assert driver.opened == ["u1"]

    @pytest.mark.asyncio
    async def test_retry_after_timeout_reuses_handle(self, tmp_path):
        driver = FakeDriver(linked=False)
        manager = make_manager(tmp_path, driver, timeout=0.05)
        with pytest.raises(SessionTimeout):
            await manager.acquire("u1")

        driver.linked.set()
        session = await manager.acquire("u1")
        assert session.state == SessionState.READY
        assert driver.opened == ["u1"]
        manager.release(session)

    @pytest.mark.asyncio
    async def test_open_failure_is_worker_error(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver(fail_open=True))
        with pytest.raises(WorkerError, match="Could not open session") as exc:
            await manager.acquire("u1")
        assert exc.value.retryable
        assert manager.get("u1").state == SessionState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_link_failure_is_worker_error(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver(fail_link=True))
        with pytest.raises(WorkerError, match="failed while linking"):
            await manager.acquire("u1")

    @pytest.mark.asyncio
    async def test_mark_unlinked_requires_relink(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver, timeout=0.05)
        session = await manager.acquire("u1")
        manager.mark_unlinked(session)
        manager.release(session)
        assert session.state == SessionState.AWAITING_LINKING
        assert session.linked_at is None

        driver.linked.clear()
        with pytest.raises(SessionTimeout):
            await manager.acquire("u1")

        driver.linked.set()
        again = await manager.acquire("u1")
        assert again.state == SessionState.READY
        manager.release(again)


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_closes_and_forgets(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        session = await manager.acquire("u1")
        manager.release(session)

        assert await manager.revoke("u1")
        assert session.state == SessionState.CLOSED
        assert session.handle is None
        assert driver.closed == ["u1"]
        assert manager.get("u1") is None
        assert session.data_dir.is_dir()

    @pytest.mark.asyncio
    async def test_revoke_unknown_user(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        assert not await manager.revoke("ghost")

    @pytest.mark.asyncio
    async def test_revoke_waits_for_borrower(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        session = await manager.acquire("u1")

        revoking = asyncio.create_task(manager.revoke("u1"))
        await asyncio.sleep(0.02)
        assert not revoking.done()
        assert driver.closed == []

        manager.release(session)
        assert await asyncio.wait_for(revoking, 1)
        assert driver.closed == ["u1"]

    @pytest.mark.asyncio
    async def test_revoke_during_linking(self, tmp_path):
        driver = FakeDriver(linked=False)
        manager = make_manager(tmp_path, driver, timeout=5)

        acquiring = asyncio.create_task(manager.acquire("u1"))
        await asyncio.sleep(0.02)
        assert await manager.revoke("u1")

        with pytest.raises(WorkerError, match="revoked"):
            await asyncio.wait_for(acquiring, 1)
        assert driver.closed == ["u1"]

    @pytest.mark.asyncio
    async def test_new_session_after_revoke(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        first = await manager.acquire("u1")
        manager.release(first)
        await manager.revoke("u1")

        second = await manager.acquire("u1")
        assert second is not first
        assert driver.opened == ["u1", "u1"]
        manager.release(second)

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, tmp_path):
        driver = FakeDriver()
        manager = make_manager(tmp_path, driver)
        for user_id in ("u1", "u2"):
            manager.release(await manager.acquire(user_id))

        await manager.shutdown()
        assert sorted(driver.closed) == ["u1", "u2"]
        assert driver.shut_down
        assert manager.snapshot() == []


class TestViews:
    @pytest.mark.asyncio
    async def test_snapshot(self, tmp_path):
        manager = make_manager(tmp_path, FakeDriver())
        session = await manager.acquire("u1")

        [info] = manager.snapshot()
        assert info.user_id == "u1"
        assert info.state == SessionState.READY
        assert info.borrowed
        assert info.data_dir.endswith("user_u1")
        manager.release(session)
        assert manager.get("u1").deliveries == 1
