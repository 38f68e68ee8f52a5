"""Tests for the session cache (optimistic local state + flushes)."""

import asyncio

import pytest

from chatledger.cache import SessionCache
from chatledger.errors import EntityNotFound, StorageUnavailable, Unauthorized
from chatledger.resolver import VersionResolver
from chatledger.types import CHAT, ERROR, NOT_SAVED, PENDING, SAVED, ChatSession, Message
from chatledger.versioning import EntityWriter

from tests.conftest import USER, FlakyWriter, RecordingWriter


def _add(snapshot, *pairs):
    """Append (role, content) messages to a chat snapshot."""
    return snapshot.with_messages(list(snapshot.messages) + [Message(r, c) for r, c in pairs])


class GatedWriter(RecordingWriter):
    """Each write waits for ``gate`` to open."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def write(self, *args, **kwargs):
        self.started.set()
        await self.gate.wait()
        return await super().write(*args, **kwargs)


async def _started(chats, chat_id="chat-1"):
    await chats.init(USER, load=False)
    chats.create(ChatSession(id=chat_id, user_address=USER))
    return chats.get_snapshot(chat_id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_operations_need_user(self, chats):
        with pytest.raises(Unauthorized):
            chats.create(ChatSession(id="chat-1"))

    @pytest.mark.asyncio
    async def test_init_loads_remote(self, writer, chats):
        await writer.write(CHAT, "chat-1", USER, ChatSession(id="chat-1", messages=(Message("user", "hi"),)))
        await chats.init(USER)
        assert "chat-1" in chats
        assert chats.save_status("chat-1") == SAVED
        assert chats.get_entry("chat-1").root_record_id is not None

    @pytest.mark.asyncio
    async def test_teardown_forgets(self, chats):
        await _started(chats)
        await chats.teardown()
        assert chats.user_address is None
        assert "chat-1" not in chats


class TestSaveStatus:
    @pytest.mark.asyncio
    async def test_empty_placeholder_is_saved(self, chats, writer):
        await _started(chats)
        assert chats.save_status("chat-1") == SAVED
        assert chats.active_id == "chat-1"
        assert await chats.flush("chat-1") is None
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_mutation_marks_not_saved(self, chats):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "Hello")))
        assert chats.save_status("chat-1") == NOT_SAVED

    @pytest.mark.asyncio
    async def test_same_content_stays_saved(self, chats):
        snap = await _started(chats)
        chats.mutate("chat-1", snap)
        assert chats.save_status("chat-1") == SAVED

    @pytest.mark.asyncio
    async def test_flush_writes_and_marks_saved(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "Hello")))
        result = await chats.flush("chat-1")

        assert result is not None
        assert chats.save_status("chat-1") == SAVED
        entry = chats.get_entry("chat-1")
        assert entry.root_record_id == result.record_id
        assert entry.last_saved_unit_count == 1
        assert chats.get_snapshot("chat-1").updated_at is not None
        assert len(writer.writes) == 1

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_content(self, store, identity, resolver):
        writer = FlakyWriter(store, store, identity)
        chats = SessionCache(CHAT, writer, resolver)
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "Hello")))

        writer.fail = True
        with pytest.raises(StorageUnavailable):
            await chats.flush("chat-1")
        assert chats.save_status("chat-1") == ERROR
        assert chats.get_snapshot("chat-1").messages[0].content == "Hello"
        assert isinstance(chats.get_entry("chat-1").last_error, StorageUnavailable)

        writer.fail = False
        await chats.flush("chat-1")
        assert chats.save_status("chat-1") == SAVED
        assert chats.get_entry("chat-1").last_error is None


class TestTurnComplete:
    @pytest.mark.asyncio
    async def test_one_write_per_turn(self, chats, writer):
        snap = await _started(chats)
        snap = _add(snap, ("user", "Hi"), ("assistant", "Hello!"))
        chats.mutate("chat-1", snap)

        assert await chats.on_turn_complete("chat-1") is not None
        assert await chats.on_turn_complete("chat-1") is None
        assert len(writer.writes) == 1

        chats.mutate("chat-1", _add(chats.get_snapshot("chat-1"), ("user", "More"), ("assistant", "Sure")))
        await chats.on_turn_complete("chat-1")
        assert len(writer.writes) == 2
        assert writer.writes[1].root_record_id == writer.writes[0].record_id

    @pytest.mark.asyncio
    async def test_no_write_after_user_message(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "Hi")))
        assert await chats.on_turn_complete("chat-1") is None
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_no_write_for_blank_reply(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "Hi"), ("assistant", "  ")))
        assert await chats.on_turn_complete("chat-1") is None
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_unknown_id_ignored(self, chats):
        await chats.init(USER, load=False)
        assert await chats.on_turn_complete("nope") is None


class TestSwitching:
    @pytest.mark.asyncio
    async def test_switch_without_changes_writes_nothing(self, chats, writer):
        snap = await _started(chats, "chat-1")
        chats.mutate("chat-1", _add(snap, ("user", "a"), ("assistant", "b")))
        await chats.flush("chat-1")
        chats.create(ChatSession(id="chat-2", user_address=USER))

        for target in ("chat-1", "chat-2", "chat-1", "chat-2"):
            await chats.set_active(target)
        await chats.drain()
        assert len(writer.writes) == 1

    @pytest.mark.asyncio
    async def test_switch_flushes_unsaved_in_background(self, chats, writer):
        snap = await _started(chats, "chat-1")
        chats.mutate("chat-1", _add(snap, ("user", "unsaved")))
        chats.create(ChatSession(id="chat-2", user_address=USER))
        await chats.set_active("chat-1")
        await chats.set_active("chat-2")

        await chats.drain()
        assert len(writer.writes) == 1
        assert chats.save_status("chat-1") == SAVED

    @pytest.mark.asyncio
    async def test_unknown_id(self, chats):
        await chats.init(USER, load=False)
        with pytest.raises(EntityNotFound):
            await chats.set_active("chat-missing")

    @pytest.mark.asyncio
    async def test_cache_wins_over_lagging_index(self, lagging_store, identity):
        chats = SessionCache(
            CHAT,
            EntityWriter(lagging_store, lagging_store, identity),
            VersionResolver(lagging_store, lagging_store, identity),
        )
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a"), ("assistant", "b")))
        await chats.flush("chat-1")
        chats.create(ChatSession(id="chat-2", user_address=USER))

        restored = await chats.set_active("chat-1")
        assert restored.unit_count == 2

    @pytest.mark.asyncio
    async def test_entities_sorted_by_activity(self, chats):
        snap = await _started(chats, "chat-1")
        chats.create(ChatSession(id="chat-2", user_address=USER))
        chats.mutate("chat-1", _add(snap, ("user", "a"), ("assistant", "b")))
        await chats.flush("chat-1")
        assert [s.id for s in chats.entities()] == ["chat-1", "chat-2"]


class TestInFlight:
    @pytest.mark.asyncio
    async def test_flush_during_flush_is_queued(self, store, identity, resolver):
        writer = GatedWriter(store, store, identity)
        chats = SessionCache(CHAT, writer, resolver)
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "one")))

        first = asyncio.create_task(chats.flush("chat-1"))
        await writer.started.wait()
        assert chats.save_status("chat-1") == PENDING

        chats.mutate("chat-1", _add(chats.get_snapshot("chat-1"), ("assistant", "two")))
        assert await chats.flush("chat-1") is None

        writer.gate.set()
        result = await first
        assert len(writer.writes) == 2
        assert result.snapshot.unit_count == 2
        assert chats.save_status("chat-1") == SAVED
        assert writer.writes[1].root_record_id == writer.writes[0].record_id

    @pytest.mark.asyncio
    async def test_delete_waits_for_running_flush(self, store, identity, resolver):
        writer = GatedWriter(store, store, identity)
        chats = SessionCache(CHAT, writer, resolver)
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "one")))

        flush = asyncio.create_task(chats.flush("chat-1"))
        await writer.started.wait()
        delete = asyncio.create_task(chats.mark_deleted("chat-1"))
        await asyncio.sleep(0)
        assert "chat-1" not in chats

        writer.gate.set()
        await flush
        tombstone = await delete
        assert tombstone.root_record_id == writer.writes[0].record_id
        assert store.get(tombstone.record_id).tag("Is-Deleted") == "true"


class TestDelete:
    @pytest.mark.asyncio
    async def test_placeholder_needs_no_tombstone(self, chats, writer):
        await _started(chats)
        assert await chats.mark_deleted("chat-1") is None
        assert writer.writes == []
        assert chats.active_id is None

    @pytest.mark.asyncio
    async def test_unknown_id(self, chats):
        await chats.init(USER, load=False)
        with pytest.raises(EntityNotFound):
            await chats.mark_deleted("chat-missing")

    @pytest.mark.asyncio
    async def test_deleted_stays_hidden_while_index_lags(self, lagging_store, identity, clock):
        chats = SessionCache(
            CHAT,
            EntityWriter(lagging_store, lagging_store, identity),
            VersionResolver(lagging_store, lagging_store, identity),
        )
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a"), ("assistant", "b")))
        first = await chats.flush("chat-1")

        clock.advance(5.0)
        tombstone = await chats.mark_deleted("chat-1")
        assert tombstone.root_record_id == first.record_id

        # Index shows the live version but not the tombstone yet
        await chats.refresh()
        assert "chat-1" not in chats
        with pytest.raises(EntityNotFound):
            await chats.set_active("chat-1")

        clock.advance(5.0)
        fresh = VersionResolver(lagging_store, lagging_store, identity)
        assert await fresh.load(CHAT, USER) == []

    @pytest.mark.asyncio
    async def test_tombstone_before_index_uses_known_root(self, lagging_store, identity):
        chats = SessionCache(
            CHAT,
            EntityWriter(lagging_store, lagging_store, identity),
            VersionResolver(lagging_store, lagging_store, identity),
        )
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a")))
        first = await chats.flush("chat-1")
        tombstone = await chats.mark_deleted("chat-1")
        assert lagging_store.get(tombstone.record_id).tag("Root-TX") == first.record_id

    @pytest.mark.asyncio
    async def test_remote_failure_still_deleted_locally(self, store, identity, resolver):
        writer = FlakyWriter(store, store, identity)
        chats = SessionCache(CHAT, writer, resolver)
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a")))
        await chats.flush("chat-1")

        writer.fail = True
        with pytest.raises(StorageUnavailable):
            await chats.mark_deleted("chat-1")
        assert "chat-1" not in chats
        await chats.refresh()
        assert "chat-1" not in chats


class TestRefresh:
    @pytest.mark.asyncio
    async def test_dirty_local_content_kept(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a"), ("assistant", "b")))
        await chats.flush("chat-1")
        chats.mutate("chat-1", _add(chats.get_snapshot("chat-1"), ("user", "local only")))

        await chats.refresh()
        assert chats.get_snapshot("chat-1").unit_count == 3
        assert chats.save_status("chat-1") == NOT_SAVED

    @pytest.mark.asyncio
    async def test_newer_remote_adopted(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a")))
        await chats.flush("chat-1")

        # Another session appends to the same chat
        stored = chats.get_snapshot("chat-1")
        await writer.write(CHAT, "chat-1", USER, _add(stored, ("assistant", "b"), ("user", "c")))

        await chats.refresh()
        assert chats.get_snapshot("chat-1").unit_count == 3
        assert chats.save_status("chat-1") == SAVED

    @pytest.mark.asyncio
    async def test_set_active_pulls_when_remote_ahead(self, chats, writer):
        snap = await _started(chats)
        chats.mutate("chat-1", _add(snap, ("user", "a")))
        await chats.flush("chat-1")
        chats.create(ChatSession(id="chat-2", user_address=USER))

        stored = chats.get_snapshot("chat-1")
        await writer.write(CHAT, "chat-1", USER, _add(stored, ("assistant", "b")))
        chats.get_entry("chat-1").remote_unit_count = 2

        restored = await chats.set_active("chat-1")
        assert restored.unit_count == 2
