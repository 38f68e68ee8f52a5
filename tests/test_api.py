"""End-to-end tests of ChatLedger over the local backend."""

import logging

import pytest

from chatledger import ChatLedger
from chatledger.backend import StoreBundle
from chatledger.errors import EntityNotFound, Unauthorized
from chatledger.identity import StaticIdentity
from chatledger.orchestrator import COMPLETED
from chatledger.types import CHAT, SAVED

from tests.conftest import OTHER_USER, OWNER, USER, FakeCompletion


@pytest.fixture
def ledger(config, store):
    """ChatLedger over the shared test store with a scripted provider."""
    bundle = StoreBundle(
        record_store=store, index=store, identity=StaticIdentity(OWNER), is_local=True
    )
    completion = FakeCompletion()
    led = ChatLedger(config=config, stores=bundle, completion=completion)
    led.fake = completion
    yield led
    # Leave the store to its fixture; only drop the ops log handler
    logging.getLogger("chatledger").removeHandler(led._ops_log_handler)
    led._ops_log_handler.close()


class TestChatScenario:
    @pytest.mark.asyncio
    async def test_two_turns_then_delete(self, ledger, store):
        await ledger.connect(USER)
        ledger.fake.replies = ["Hi! How can I help?", "Sure, here it is."]

        first = await ledger.send("Hello")
        assert first.outcome == COMPLETED
        chat_id = first.chat_id
        root = store.get(first.saved.record_id)
        assert root.tag("Message-Count") == "2"
        assert root.tag("Root-TX") is None

        second = await ledger.send("Tell me more", chat_id=chat_id)
        update = store.get(second.saved.record_id)
        assert update.tag("Message-Count") == "4"
        assert update.tag("Root-TX") == root.id
        assert ledger.save_status("chat", chat_id) == SAVED

        await ledger.delete_chat(chat_id)
        tombstones = [
            r for r in await store.query([])
            if r.tag("Is-Deleted") == "true"
        ]
        assert len(tombstones) == 1
        assert tombstones[0].tag("Root-TX") == root.id

        assert await ledger.resolver.load(CHAT, USER) == []
        assert await ledger.list_chats() == []

    @pytest.mark.asyncio
    async def test_new_session_sees_saved_chat(self, ledger, config, store):
        await ledger.connect(USER)
        ledger.fake.replies = ["Answer"]
        result = await ledger.send("Question")
        await ledger.disconnect()

        await ledger.connect(USER)
        chats = await ledger.list_chats()
        assert [c.id for c in chats] == [result.chat_id]
        assert chats[0].title == "Question"
        assert chats[0].unit_count == 2

    @pytest.mark.asyncio
    async def test_users_isolated(self, ledger):
        await ledger.connect(USER)
        await ledger.send("Mine")
        await ledger.disconnect()

        await ledger.connect(OTHER_USER)
        assert await ledger.list_chats() == []

    @pytest.mark.asyncio
    async def test_rename(self, ledger, store):
        await ledger.connect(USER)
        result = await ledger.send("Hello")
        renamed = await ledger.rename_chat(result.chat_id, "Greeting")
        assert renamed.title == "Greeting"
        records = await store.query([])
        assert records[0].tag("Chat-Title") == "Greeting"

    @pytest.mark.asyncio
    async def test_new_chat_is_not_stored(self, ledger, store):
        await ledger.connect(USER)
        chat = ledger.new_chat()
        assert ledger.save_status("chat", chat.id) == SAVED
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_select_unknown(self, ledger):
        await ledger.connect(USER)
        with pytest.raises(EntityNotFound):
            await ledger.select_chat("chat-nope")


class TestAgents:
    @pytest.mark.asyncio
    async def test_create_update_delete(self, ledger, store):
        await ledger.connect(USER)
        agent = await ledger.create_agent("Reviewer", "Review code carefully.", "Code reviews")
        assert ledger.save_status("agent", agent.id) == SAVED
        assert store.count() == 1

        updated = await ledger.update_agent(agent.id, system_prompt="Be strict.")
        assert updated.system_prompt == "Be strict."
        records = await store.query([])
        assert records[0].tag("Root-TX") == records[1].id

        await ledger.delete_agent(agent.id)
        assert await ledger.list_agents() == []

    @pytest.mark.asyncio
    async def test_attach_file_reaches_prompt(self, ledger):
        await ledger.connect(USER)
        agent = await ledger.create_agent("Researcher", "Use the notes.")
        attachment = await ledger.attach_file(agent.id, b"The sky is green.", "notes.txt")
        assert attachment.type == "text/plain"
        assert await ledger.fetch_file(attachment.record_id) == b"The sky is green."

        ledger.fake.replies = ["Green."]
        await ledger.send("What color is the sky?", agent_id=agent.id)
        system = ledger.fake.calls[0][0]["content"]
        assert "The sky is green." in system

        agent = await ledger.remove_file(agent.id, attachment.id)
        assert agent.file_context == ()

    @pytest.mark.asyncio
    async def test_upload_attachment(self, ledger, store):
        await ledger.connect(USER)
        attachment = await ledger.upload_attachment(b"a,b\n1,2\n", "data.csv")
        assert store.get(attachment.record_id).tag("Temporary") == "true"

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, ledger):
        await ledger.connect(USER)
        with pytest.raises(ValueError):
            await ledger.create_agent("  ", "p")


class TestSession:
    @pytest.mark.asyncio
    async def test_requires_connect(self, ledger):
        with pytest.raises(Unauthorized):
            await ledger.list_chats()

    @pytest.mark.asyncio
    async def test_connect_uses_configured_user(self, ledger):
        await ledger.connect()
        assert ledger.user_address == USER

    @pytest.mark.asyncio
    async def test_connect_without_user(self, tmp_path, store):
        from chatledger.config import StoreConfig
        bundle = StoreBundle(store, store, StaticIdentity(OWNER), True)
        async with ChatLedger(config=StoreConfig(path=tmp_path / "cfg"), stores=bundle) as led:
            with pytest.raises(Unauthorized):
                await led.connect()

    @pytest.mark.asyncio
    async def test_completion_from_registry(self, config, mock_registry):
        async with ChatLedger(config=config) as led:
            await led.connect(USER)
            mock_registry["completion"].replies = ["From registry"]
            result = await led.send("Hi")
        assert result.content == "From registry"
        name, params = mock_registry["registry"].create_completion.call_args.args
        assert name == "openrouter"
        assert params["timeout"] == config.completion_timeout
