"""
Tests for the message store backends.

Covers:
  - InMemoryMessageStore
  - FileMessageStore (JSON file persistence, restart recovery)
  - Store factory
"""
import json
import pytest
from datetime import timedelta

from models.errors import InvalidTransitionError, MessageNotFoundError
from models.schemas import MessageStatus


# ──────────────────────────────────────────────────────────────
#  InMemoryMessageStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryMessageStore:
    @pytest.fixture
    def store(self, memory_store):
        return memory_store

    @pytest.mark.asyncio
    async def test_create_and_get(self, store, contact, now):
        created = await store.create_message("u1", contact, "hello", now)
        assert len(created.id) == 16
        assert created.status == MessageStatus.SCHEDULED

        fetched = await store.get_message(created.id)
        assert fetched is not None
        assert fetched.content == "hello"
        assert fetched.contact.phone_number == contact.phone_number

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        assert await store.get_message("nope") is None

    @pytest.mark.asyncio
    async def test_returns_copies(self, store, contact, now):
        created = await store.create_message("u1", contact, "hello", now)
        created.status = MessageStatus.SENT
        fetched = await store.get_message(created.id)
        assert fetched.status == MessageStatus.SCHEDULED
        assert fetched is not await store.get_message(created.id)

    @pytest.mark.asyncio
    async def test_list_by_user_newest_first(self, store, contact, now):
        old = await store.create_message("u1", contact, "old", now - timedelta(hours=2))
        new = await store.create_message("u1", contact, "new", now + timedelta(hours=2))
        await store.create_message("u2", contact, "other", now)

        mine = await store.list_messages(user_id="u1")
        assert [m.id for m in mine] == [new.id, old.id]
        assert len(await store.list_messages()) == 3

    @pytest.mark.asyncio
    async def test_find_due(self, store, contact, now):
        due = await store.create_message("u1", contact, "due", now - timedelta(minutes=1))
        await store.create_message("u1", contact, "later", now + timedelta(minutes=1))
        canceled = await store.create_message("u1", contact, "canceled", now - timedelta(minutes=1))
        await store.set_status(canceled.id, MessageStatus.CANCELED)

        found = await store.find_due(now)
        assert [m.id for m in found] == [due.id]

    @pytest.mark.asyncio
    async def test_set_status_records_history(self, store, contact, now):
        message = await store.create_message("u1", contact, "x", now)
        await store.set_status(message.id, MessageStatus.PROCESSING)
        updated = await store.set_status(message.id, MessageStatus.SENT)

        assert updated.status == MessageStatus.SENT
        assert [(c.from_status, c.to_status) for c in updated.status_history] == [
            (MessageStatus.SCHEDULED, MessageStatus.PROCESSING),
            (MessageStatus.PROCESSING, MessageStatus.SENT),
        ]
        assert updated.updated_at >= updated.created_at

    @pytest.mark.asyncio
    async def test_status_never_regresses(self, store, contact, now):
        message = await store.create_message("u1", contact, "x", now)
        await store.set_status(message.id, MessageStatus.CANCELED)
        with pytest.raises(InvalidTransitionError):
            await store.set_status(message.id, MessageStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            await store.set_status(message.id, MessageStatus.SCHEDULED)

    @pytest.mark.asyncio
    async def test_set_status_unknown(self, store):
        with pytest.raises(MessageNotFoundError):
            await store.set_status("nope", MessageStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_compare_and_set(self, store, contact, now):
        message = await store.create_message("u1", contact, "x", now)
        assert await store.compare_and_set_status(
            message.id, MessageStatus.SCHEDULED, MessageStatus.PROCESSING)
        # second claim loses
        assert not await store.compare_and_set_status(
            message.id, MessageStatus.SCHEDULED, MessageStatus.PROCESSING)
        assert (await store.get_message(message.id)).status == MessageStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stats(self, store, contact, now):
        message = await store.create_message("u1", contact, "x", now)
        await store.create_message("u1", contact, "y", now)
        await store.set_status(message.id, MessageStatus.CANCELED)
        stats = await store.stats()
        assert stats["messages"] == 2
        assert stats["scheduled"] == 1
        assert stats["canceled"] == 1
        assert stats["sent"] == 0


# ──────────────────────────────────────────────────────────────
#  FileMessageStore
# ──────────────────────────────────────────────────────────────

class TestFileMessageStore:
    @pytest.fixture
    def data_dir(self, tmp_path):
        return str(tmp_path / "data")

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, data_dir, contact, now):
        from database.store_file import FileMessageStore
        store = FileMessageStore(data_dir=data_dir)
        message = await store.create_message("u1", contact, "persist me", now)
        await store.set_status(message.id, MessageStatus.CANCELED)

        reopened = FileMessageStore(data_dir=data_dir)
        loaded = await reopened.get_message(message.id)
        assert loaded.content == "persist me"
        assert loaded.status == MessageStatus.CANCELED
        assert loaded.scheduled_at == now
        assert len(loaded.status_history) == 1

    @pytest.mark.asyncio
    async def test_file_layout(self, data_dir, contact, now):
        from database.store_file import FileMessageStore
        store = FileMessageStore(data_dir=data_dir)
        message = await store.create_message("u1", contact, "x", now)
        with open(store.path) as f:
            raw = json.load(f)
        assert raw[message.id]["status"] == "scheduled"
        assert raw[message.id]["contact"]["name"] == contact.name

    @pytest.mark.asyncio
    async def test_interrupted_delivery_resolved_on_load(self, data_dir, contact, now):
        from database.store_file import FileMessageStore
        store = FileMessageStore(data_dir=data_dir)
        message = await store.create_message("u1", contact, "x", now)
        await store.set_status(message.id, MessageStatus.PROCESSING)

        reopened = FileMessageStore(data_dir=data_dir)
        loaded = await reopened.get_message(message.id)
        assert loaded.status == MessageStatus.FAILED_WORKER_ERROR
        assert await reopened.find_due(now + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_set_aside(self, data_dir, contact, now):
        from database.store_file import FileMessageStore
        store = FileMessageStore(data_dir=data_dir)
        first = await store.create_message("u1", contact, "first", now)
        damaged = store.path.read_bytes()[:-1]
        store.path.write_bytes(damaged)

        reopened = FileMessageStore(data_dir=data_dir)
        assert len(reopened._messages) == 0
        await reopened.create_message("u1", contact, "second", now)

        backups = list(reopened.path.parent.glob("messages.json.corrupt-*"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == damaged
        assert first.id.encode() in backups[0].read_bytes()

    @pytest.mark.asyncio
    async def test_invalid_record_is_set_aside(self, data_dir, contact, now):
        from database.store_file import FileMessageStore
        store = FileMessageStore(data_dir=data_dir)
        good = await store.create_message("u1", contact, "good", now)
        raw = json.loads(store.path.read_text())
        raw["broken"] = {"id": "broken", "user_id": "u1", "status": "exploded"}
        store.path.write_text(json.dumps(raw))

        reopened = FileMessageStore(data_dir=data_dir)
        assert await reopened.get_message(good.id) is not None
        assert "broken" not in json.loads(reopened.path.read_text())

        backups = list(reopened.path.parent.glob("messages.json.rejected-*"))
        assert len(backups) == 1
        assert json.loads(backups[0].read_text()) == {"broken": raw["broken"]}


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryMessageStore
        store = create_store()
        assert type(store) is InMemoryMessageStore

    def test_file_backend(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileMessageStore
        store = create_store({"store_backend": "file", "store_file_dir": str(tmp_path)})
        assert isinstance(store, FileMessageStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store, reset_store
        first = create_store()
        assert get_store() is first
        reset_store()
        assert get_store() is not first
