"""Tests for the entity write path (record chains)."""

import json

import pytest

from chatledger.errors import Unauthorized
from chatledger.identity import NoIdentity
from chatledger.types import AGENT, CHAT, Agent, ChatSession, Message
from chatledger.versioning import EntityWriter

from tests.conftest import USER


def _chat(chat_id="chat-1", n=2, title="Hello"):
    msgs = []
    for i in range(n):
        role = "user" if i % 2 == 0 else "assistant"
        msgs.append(Message(role, f"m{i}"))
    return ChatSession(id=chat_id, title=title, messages=tuple(msgs), user_address=USER)


class TestCreate:
    @pytest.mark.asyncio
    async def test_root_record_tags(self, writer, store):
        result = await writer.write(CHAT, "chat-1", USER, _chat())
        assert not result.is_update
        assert result.root_record_id == result.record_id

        record = store.get(result.record_id)
        tags = record.tag_dict
        assert "Root-TX" not in tags
        assert tags["Created-At"].endswith("Z")
        assert tags["App-Name"] == "ChatAppChats"
        assert tags["Type"] == "chat-session"
        assert tags["Chat-ID"] == "chat-1"
        assert tags["Chat-Title"] == "Hello"
        assert tags["User-Address"] == USER
        assert tags["Is-Deleted"] == "false"
        assert tags["Message-Count"] == "2"
        assert tags["Optimization"] == "mutable-reference"
        assert tags["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_payload_is_snapshot_json(self, writer, store):
        result = await writer.write(CHAT, "chat-1", USER, _chat())
        payload = json.loads(store.get(result.record_id).payload)
        assert payload["chatId"] == "chat-1"
        assert len(payload["messages"]) == 2
        assert payload["createdAt"] == payload["updatedAt"]

    @pytest.mark.asyncio
    async def test_mutable_url(self, writer):
        result = await writer.write(CHAT, "chat-1", USER, _chat())
        assert result.mutable_url == f"local://mutable/{result.record_id}"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_updates_link_to_root(self, writer, store):
        first = await writer.write(CHAT, "chat-1", USER, _chat(n=2))
        second = await writer.write(CHAT, "chat-1", USER, _chat(n=4))
        third = await writer.write(CHAT, "chat-1", USER, _chat(n=6))

        assert second.is_update and third.is_update
        for result in (second, third):
            tags = store.get(result.record_id).tag_dict
            assert tags["Root-TX"] == first.record_id
            assert "Created-At" not in tags
        assert store.get(third.record_id).tag("Message-Count") == "6"
        assert third.timestamp > second.timestamp > first.timestamp

    @pytest.mark.asyncio
    async def test_created_at_carried_forward(self, writer):
        first = await writer.write(CHAT, "chat-1", USER, _chat())
        second = await writer.write(CHAT, "chat-1", USER, first.snapshot.with_messages([]))
        assert second.snapshot.created_at == first.snapshot.created_at

    @pytest.mark.asyncio
    async def test_identical_content_still_writes(self, writer, store):
        await writer.write(CHAT, "chat-1", USER, _chat())
        await writer.write(CHAT, "chat-1", USER, _chat())
        assert store.count() == 2

    @pytest.mark.asyncio
    async def test_other_user_starts_own_chain(self, writer, store):
        mine = await writer.write(CHAT, "chat-1", USER, _chat())
        theirs = await writer.write(CHAT, "chat-1", "0xother", _chat())
        assert not theirs.is_update
        assert theirs.root_record_id != mine.root_record_id

    @pytest.mark.asyncio
    async def test_root_hint_used_while_index_lags(self, lagging_store, identity):
        writer = EntityWriter(lagging_store, lagging_store, identity)
        first = await writer.write(CHAT, "chat-1", USER, _chat())

        # Not indexed yet: without a hint this would start a second chain
        second = await writer.write(
            CHAT, "chat-1", USER, _chat(n=4), root_hint=first.record_id
        )
        assert second.is_update
        assert lagging_store.get(second.record_id).tag("Root-TX") == first.record_id


class TestDelete:
    @pytest.mark.asyncio
    async def test_chat_tombstone(self, writer, store):
        first = await writer.write(CHAT, "chat-1", USER, _chat())
        gone = await writer.write(CHAT, "chat-1", USER, _chat(), is_deletion=True)

        tags = store.get(gone.record_id).tag_dict
        assert tags["Is-Deleted"] == "true"
        assert tags["Root-TX"] == first.record_id
        assert tags["Deleted-At"].endswith("Z")
        assert json.loads(store.get(gone.record_id).payload)["isDeleted"] is True

    @pytest.mark.asyncio
    async def test_agent_tombstone_uses_deleted_tag(self, writer, store):
        agent = Agent(id="agent-1", name="Helper", system_prompt="Be helpful.")
        await writer.write(AGENT, "agent-1", USER, agent)
        gone = await writer.write(AGENT, "agent-1", USER, agent, is_deletion=True)

        tags = store.get(gone.record_id).tag_dict
        assert tags["Deleted"] == "true"
        assert tags["Agent-Name"] == "Helper"
        assert tags["App-Name"] == "ChatAppAgents"
        assert "Message-Count" not in tags
        assert "Is-Deleted" not in tags


class TestErrors:
    @pytest.mark.asyncio
    async def test_no_identity_writes_nothing(self, store):
        writer = EntityWriter(store, store, NoIdentity())
        with pytest.raises(Unauthorized):
            await writer.write(CHAT, "chat-1", USER, _chat())
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_snapshot_id_must_match(self, writer, store):
        with pytest.raises(ValueError, match="does not match"):
            await writer.write(CHAT, "chat-2", USER, _chat("chat-1"))
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_logical_id(self, writer):
        with pytest.raises(ValueError):
            await writer.write(CHAT, "bad;id", USER, _chat("bad;id"))
