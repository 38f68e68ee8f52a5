"""
Chat turn orchestration.

One turn: append the user message, stream the assistant reply into the
chat, retry once on an empty reply, and hand the finished chat to the
auto-save hook.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .cache import SessionCache
from .errors import ChatLedgerError
from .files import format_file_context
from .providers.base import CompletionProvider
from .types import (
    DEFAULT_CHAT_TITLE,
    ROLE_ASSISTANT,
    ROLE_USER,
    Agent,
    ChatSession,
    Message,
    new_logical_id,
)
from .versioning import WriteResult

logger = logging.getLogger(__name__)

# Turn outcomes
COMPLETED = "completed"            # non-empty reply on the first attempt
RETRIED = "retried"                # first reply empty, retry produced text
EMPTY_FALLBACK = "empty_fallback"  # both attempts empty, fallback text used
FAILED = "failed"                  # provider error or timeout
CANCELLED = "cancelled"

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
FALLBACK_MESSAGE = "Sorry, I couldn't generate a response. Please try again."
ERROR_MESSAGE = "Sorry, there was an error processing your request."

TITLE_MAX_LENGTH = 50
DEFAULT_HISTORY_LIMIT = 20


@dataclass
class TurnResult:
    """What happened in one chat turn."""
    chat_id: str
    outcome: str = FAILED
    content: str = ""
    attempts: int = 0
    error: Optional[Exception] = None
    saved: Optional[WriteResult] = None
    save_error: Optional[Exception] = None


def title_from_message(text: str) -> str:
    """Chat title from its first message."""
    if len(text) > TITLE_MAX_LENGTH:
        return text[:TITLE_MAX_LENGTH] + "..."
    return text


def system_prompt_for(agent: Optional[Agent]) -> Optional[str]:
    """Agent's system prompt with its file context appended."""
    if agent is None:
        return None
    parts = [agent.system_prompt] if agent.system_prompt else []
    files = format_file_context(agent.file_context)
    if files:
        parts.append(files)
    return "\n\n".join(parts) or None


def build_context(
    history,
    user_text: str,
    system_prompt: Optional[str] = None,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[dict]:
    """Provider messages: system prompt, recent history, then the new message."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    recent = list(history)[-history_limit:] if history_limit else []
    messages.extend({"role": m.role, "content": m.content} for m in recent)
    messages.append({"role": ROLE_USER, "content": user_text})
    return messages


class ChatOrchestrator:
    """Runs chat turns against a completion provider."""

    def __init__(
        self,
        chats: SessionCache,
        completion: CompletionProvider,
        *,
        agents: Optional[SessionCache] = None,
        model: Optional[str] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        timeout: Optional[float] = None,
    ):
        self._chats = chats
        self._completion = completion
        self._agents = agents
        self._model = model
        self._history_limit = history_limit
        self._timeout = timeout

    def _agent(self, agent_id: Optional[str]) -> Optional[Agent]:
        if agent_id is None:
            return None
        if self._agents is None:
            raise ValueError("No agent cache configured")
        return self._agents.get_snapshot(agent_id)

    async def _open_chat(self, chat_id: Optional[str]) -> str:
        if chat_id is None:
            user = self._chats.user_address or ""
            chat = ChatSession(id=new_logical_id("chat"), user_address=user)
            self._chats.create(chat)
            logger.info("Started chat %s", chat.id)
            return chat.id
        if self._chats.active_id != chat_id:
            await self._chats.set_active(chat_id)
        return chat_id

    def _set_reply(self, chat_id: str, reply_index: int, content: Optional[str]) -> None:
        """Put the assistant message at ``reply_index`` (None removes it)."""
        if chat_id not in self._chats:
            # Deleted mid-turn
            return
        chat = self._chats.get_snapshot(chat_id)
        messages = list(chat.messages[:reply_index])
        if content is not None:
            messages.append(Message(ROLE_ASSISTANT, content))
        self._chats.mutate(chat_id, chat.with_messages(messages))

    async def _stream(
        self,
        chat_id: str,
        reply_index: int,
        context: list[dict],
        on_delta: Optional[Callable[[str], None]],
        reply: list[str],
    ) -> str:
        """Stream one attempt into the chat. ``reply`` collects deltas as they arrive."""
        reply.clear()
        self._set_reply(chat_id, reply_index, "")
        async with asyncio.timeout(self._timeout):
            async for delta in self._completion.stream_complete(context, self._model):
                reply.append(delta)
                self._set_reply(chat_id, reply_index, "".join(reply))
                if on_delta is not None:
                    on_delta(delta)
        return "".join(reply)

    async def send(
        self,
        text: str,
        chat_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> TurnResult:
        """
        Run one turn.

        Args:
            text: User message
            chat_id: Chat to continue; None starts a new chat
            agent_id: Agent whose system prompt and files to use
            on_delta: Called with each streamed text delta

        Returns:
            TurnResult; provider failures are reported here, not raised

        Raises:
            ValueError: Empty message
            EntityNotFound: Unknown chat or agent
            asyncio.CancelledError: Turn cancelled (partial reply kept)
        """
        text = text.strip()
        if not text:
            raise ValueError("Message is empty")
        agent = self._agent(agent_id)
        chat_id = await self._open_chat(chat_id)

        chat = self._chats.get_snapshot(chat_id)
        history = chat.messages
        title = chat.title
        if not history and title == DEFAULT_CHAT_TITLE:
            title = title_from_message(text)
        user_message = Message(ROLE_USER, text, agent=agent.name if agent else None)
        self._chats.mutate(chat_id, replace(chat, title=title, messages=history + (user_message,)))
        reply_index = len(history) + 1

        system_prompt = system_prompt_for(agent)
        result = TurnResult(chat_id=chat_id)
        reply: list[str] = []
        try:
            context = build_context(history, text, system_prompt, self._history_limit)
            result.attempts = 1
            content = await self._stream(chat_id, reply_index, context, on_delta, reply)
            if content.strip():
                result.outcome = COMPLETED
            else:
                logger.warning("Empty completion for chat %s, retrying once", chat_id)
                context = build_context(
                    history, text, system_prompt or DEFAULT_SYSTEM_PROMPT, self._history_limit
                )
                result.attempts = 2
                try:
                    content = await self._stream(chat_id, reply_index, context, on_delta, reply)
                except Exception as e:
                    result.error = e
                    content = "".join(reply)
                    logger.warning("Retry failed for chat %s: %s", chat_id, e, exc_info=True)
                if content.strip():
                    result.outcome = RETRIED
                else:
                    logger.warning("Retry also empty for chat %s, using fallback", chat_id)
                    content = FALLBACK_MESSAGE
                    self._set_reply(chat_id, reply_index, content)
                    result.outcome = EMPTY_FALLBACK
            result.content = content
        except asyncio.CancelledError:
            result.outcome = CANCELLED
            partial = "".join(reply)
            self._set_reply(chat_id, reply_index, partial or None)
            logger.info("Turn cancelled for chat %s (%d chars kept)", chat_id, len(partial))
            raise
        except Exception as e:
            result.outcome = FAILED
            result.error = e
            partial = "".join(reply)
            result.content = partial if partial.strip() else ERROR_MESSAGE
            self._set_reply(chat_id, reply_index, result.content)
            logger.warning("Completion failed for chat %s: %s", chat_id, e, exc_info=True)
        finally:
            try:
                result.saved = await self._chats.on_turn_complete(chat_id)
            except ChatLedgerError as e:
                result.save_error = e
                logger.warning("Auto-save of chat %s failed: %s", chat_id, e)
        return result
