"""
Core API for chatledger.

This is the minimal working implementation focused on:
- list/open/send/rename/delete for chats
- create/update/delete and file context for agents
- save status per chat or agent
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from .backend import StoreBundle, create_stores
from .cache import SessionCache
from .config import StoreConfig, get_config_dir, load_or_create_config
from .errors import InvalidFile, Unauthorized
from .files import MAX_FILES_PER_AGENT, FileUploader, attach_to_agent, detach_from_agent, guess_content_type
from .orchestrator import ChatOrchestrator, TurnResult
from .providers import CompletionProvider, get_registry
from .resolver import VersionResolver
from .types import AGENT, CHAT, Agent, ChatSession, FileAttachment, new_logical_id
from .versioning import EntityWriter

logger = logging.getLogger(__name__)


class ChatLedger:
    """
    Chats and agents kept as versioned records.

    Example:
        async with ChatLedger() as ledger:
            await ledger.connect("0xabc...")
            result = await ledger.send("Hello")
            print(result.content)
    """

    def __init__(
        self,
        config_dir: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        stores: Optional[StoreBundle] = None,
        completion: Optional[CompletionProvider] = None,
    ) -> None:
        """
        Open a ledger.

        Args:
            config_dir: Directory holding chatledger.toml. Uses default if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            stores: Injected store, index and identity (skips backend creation).
            completion: Injected completion provider (skips registry lookup).
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = Path(config_dir).expanduser() if config_dir else get_config_dir()
            self._config = load_or_create_config(path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._config.path)

        # --- Storage backends (injected or factory-created) ---
        bundle = stores or create_stores(self._config)
        self._record_store = bundle.record_store
        self._index = bundle.index
        self._identity = bundle.identity
        self._is_local = bundle.is_local

        self._writer = EntityWriter(self._record_store, self._index, self._identity)
        self._resolver = VersionResolver(
            self._record_store,
            self._index,
            self._identity,
            use_mutable_refs=self._config.use_mutable_refs,
            fetch_concurrency=self._config.fetch_concurrency,
        )
        self.chats = SessionCache(self._config.chat_kind, self._writer, self._resolver)
        self.agents = SessionCache(self._config.agent_kind, self._writer, self._resolver)
        self._uploader = FileUploader(
            self._record_store, self._identity, app_name=self._config.agent_app_name
        )

        # Created on first send to avoid requiring an API key for read-only use
        self._completion = completion
        self._orchestrator: Optional[ChatOrchestrator] = None
        self._user_address: Optional[str] = None
        self._closed = False

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def user_address(self) -> Optional[str]:
        return self._user_address

    @property
    def resolver(self) -> VersionResolver:
        return self._resolver

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def connect(self, user_address: Optional[str] = None, *, load: bool = True) -> None:
        """Start a session for an end user and load their chats and agents."""
        user = user_address or self._config.user_address
        if not user:
            raise Unauthorized("No user address; pass one or set CHATLEDGER_USER_ADDRESS")
        await self.chats.init(user, load=load)
        await self.agents.init(user, load=load)
        self._user_address = user
        logger.info("Connected as %s", user)

    async def disconnect(self) -> None:
        """Wait for pending saves and drop the session state."""
        await self.chats.teardown()
        await self.agents.teardown()
        self._user_address = None

    def _require_user(self) -> str:
        if self._user_address is None:
            raise Unauthorized("Not connected; call connect() first")
        return self._user_address

    def _cache(self, kind: str) -> SessionCache:
        if kind == CHAT.name:
            return self.chats
        if kind == AGENT.name:
            return self.agents
        raise ValueError(f"Unknown entity kind: {kind!r}")

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list_entities(self, kind: str, *, refresh: bool = True) -> list:
        """Snapshots of the connected user's chats or agents, most recent first."""
        self._require_user()
        cache = self._cache(kind)
        if refresh:
            return await cache.refresh()
        return cache.entities()

    async def list_chats(self, *, refresh: bool = True) -> list[ChatSession]:
        return await self.list_entities(CHAT.name, refresh=refresh)

    async def list_agents(self, *, refresh: bool = True) -> list[Agent]:
        return await self.list_entities(AGENT.name, refresh=refresh)

    def get_snapshot(self, kind: str, logical_id: str):
        return self._cache(kind).get_snapshot(logical_id)

    def save_status(self, kind: str, logical_id: str) -> str:
        return self._cache(kind).save_status(logical_id)

    # -------------------------------------------------------------------------
    # Chats
    # -------------------------------------------------------------------------

    def _get_completion(self) -> CompletionProvider:
        """Get the completion provider, creating it lazily on first use."""
        if self._completion is None:
            params = dict(self._config.completion.params)
            params.setdefault("timeout", self._config.completion_timeout)
            self._completion = get_registry().create_completion(
                self._config.completion.name, params
            )
        return self._completion

    @property
    def orchestrator(self) -> ChatOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = ChatOrchestrator(
                self.chats,
                self._get_completion(),
                agents=self.agents,
                model=self._config.completion_model,
                history_limit=self._config.history_limit,
                timeout=self._config.completion_timeout,
            )
        return self._orchestrator

    def new_chat(self, title: Optional[str] = None) -> ChatSession:
        """Start an empty chat and make it active. Nothing is stored until the first turn."""
        user = self._require_user()
        chat = ChatSession(id=new_logical_id("chat"), user_address=user)
        if title:
            chat = replace(chat, title=title)
        self.chats.create(chat)
        return self.chats.get_snapshot(chat.id)

    async def select_chat(self, chat_id: str) -> ChatSession:
        self._require_user()
        return await self.chats.set_active(chat_id)

    async def send(
        self,
        text: str,
        chat_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> TurnResult:
        """Send a message and stream the reply. See ChatOrchestrator.send."""
        self._require_user()
        return await self.orchestrator.send(text, chat_id, agent_id, on_delta)

    async def rename_chat(self, chat_id: str, title: str) -> ChatSession:
        title = title.strip()
        if not title:
            raise ValueError("Title is empty")
        self._require_user()
        chat = self.chats.get_snapshot(chat_id)
        self.chats.mutate(chat_id, replace(chat, title=title))
        await self.chats.flush(chat_id)
        return self.chats.get_snapshot(chat_id)

    async def delete_chat(self, chat_id: str) -> None:
        self._require_user()
        await self.chats.mark_deleted(chat_id)

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def create_agent(
        self,
        name: str,
        system_prompt: str,
        description: str = "",
    ) -> Agent:
        """Create and store a new agent."""
        user = self._require_user()
        if not name.strip():
            raise ValueError("Agent name is empty")
        agent = Agent(
            id=new_logical_id("agent"),
            name=name.strip(),
            system_prompt=system_prompt,
            description=description,
            user_address=user,
        )
        self.agents.create(agent, unsaved=True)
        await self.agents.flush(agent.id)
        return self.agents.get_snapshot(agent.id)

    async def update_agent(
        self,
        agent_id: str,
        *,
        name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Agent:
        self._require_user()
        agent = self.agents.get_snapshot(agent_id)
        changes = {}
        if name is not None:
            changes["name"] = name
        if system_prompt is not None:
            changes["system_prompt"] = system_prompt
        if description is not None:
            changes["description"] = description
        self.agents.mutate(agent_id, replace(agent, **changes))
        await self.agents.flush(agent_id)
        return self.agents.get_snapshot(agent_id)

    async def delete_agent(self, agent_id: str) -> None:
        self._require_user()
        await self.agents.mark_deleted(agent_id)

    async def attach_file(
        self,
        agent_id: str,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> FileAttachment:
        """Upload a file and add it to an agent's file context."""
        user = self._require_user()
        agent = self.agents.get_snapshot(agent_id)
        if len(agent.file_context) >= MAX_FILES_PER_AGENT:
            raise InvalidFile(f"Agent {agent_id} already has {MAX_FILES_PER_AGENT} files")
        attachment = await self._uploader.upload(
            data,
            filename,
            content_type or guess_content_type(filename),
            user,
            agent_id=agent_id,
            description=description,
        )
        agent = self.agents.get_snapshot(agent_id)
        self.agents.mutate(agent_id, attach_to_agent(agent, attachment))
        await self.agents.flush(agent_id)
        return attachment

    async def remove_file(self, agent_id: str, file_id: str) -> Agent:
        """Drop a file from an agent's file context (the file record stays)."""
        self._require_user()
        agent = self.agents.get_snapshot(agent_id)
        self.agents.mutate(agent_id, detach_from_agent(agent, file_id))
        await self.agents.flush(agent_id)
        return self.agents.get_snapshot(agent_id)

    async def upload_attachment(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> FileAttachment:
        """Store a temporary file for use in a chat."""
        user = self._require_user()
        return await self._uploader.upload(
            data,
            filename,
            content_type or guess_content_type(filename),
            user,
            description=description,
            temporary=True,
        )

    async def fetch_file(self, record_id: str) -> bytes:
        return await self._uploader.fetch(record_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Wait for pending saves, then close stores and the ops log."""
        if self._closed:
            return
        self._closed = True
        await self.disconnect()

        await self._record_store.close()
        if self._index is not self._record_store:
            await self._index.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("chatledger").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
