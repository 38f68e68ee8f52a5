"""
File context for agents, and temporary chat attachments.

Uploaded files are stored as their own records. An agent references its
files from ``file_context``; text-like files also carry their extracted
text there, which is appended to the agent's system prompt.
"""

import logging
import mimetypes
import uuid
from dataclasses import replace
from typing import Optional, Sequence

from .errors import InvalidFile
from .protocol import IdentityProvider, RecordStoreProtocol
from .types import (
    DEFAULT_AGENT_APP_NAME,
    TAG_AGENT_ID,
    TAG_APP_NAME,
    TAG_CONTENT_TYPE,
    TAG_DESCRIPTION,
    TAG_FILE_NAME,
    TAG_FILE_SIZE,
    TAG_TEMPORARY,
    TAG_TYPE,
    TAG_UPLOADED_AT,
    TAG_USER_ADDRESS,
    TYPE_FILE_ATTACHMENT,
    TYPE_FILE_CONTEXT,
    Agent,
    FileAttachment,
    Tag,
    format_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_FILES_PER_AGENT = 20
# Per-file cap on text inlined into a system prompt
MAX_INLINE_CHARS = 20_000

ALLOWED_TYPES = frozenset({
    "text/plain",
    "text/markdown",
    "text/csv",
    "application/pdf",
    "application/json",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/svg+xml",
    "image/webp",
})


def is_text_type(content_type: str) -> bool:
    return content_type.startswith("text/") or content_type == "application/json"


def guess_content_type(filename: str) -> str:
    """MIME type from the file extension, defaulting to text/plain."""
    if filename.lower().endswith((".md", ".markdown")):
        return "text/markdown"
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "text/plain"


def validate_file(data: bytes, content_type: str) -> None:
    """Raise InvalidFile if the file is too large or of an unsupported type."""
    if len(data) > MAX_FILE_SIZE:
        raise InvalidFile(
            f"File size {len(data)} exceeds {MAX_FILE_SIZE // (1024 * 1024)}MB limit"
        )
    if content_type not in ALLOWED_TYPES:
        raise InvalidFile(f"File type not supported: {content_type}")


def attach_to_agent(agent: Agent, attachment: FileAttachment) -> Agent:
    """Agent with ``attachment`` appended to its file context."""
    if len(agent.file_context) >= MAX_FILES_PER_AGENT:
        raise InvalidFile(f"Agent {agent.id} already has {MAX_FILES_PER_AGENT} files")
    return replace(agent, file_context=agent.file_context + (attachment,))


def detach_from_agent(agent: Agent, file_id: str) -> Agent:
    """Agent without the file ``file_id``."""
    remaining = tuple(f for f in agent.file_context if f.id != file_id)
    if len(remaining) == len(agent.file_context):
        raise InvalidFile(f"Agent {agent.id} has no file {file_id}")
    return replace(agent, file_context=remaining)


def format_file_context(files: Sequence[FileAttachment]) -> str:
    """
    Render an agent's files as a block for the system prompt.

    Text files are inlined (truncated to MAX_INLINE_CHARS); other files
    are listed by name and type only. Returns "" when there are no files.
    """
    if not files:
        return ""
    parts = ["Reference files:"]
    for f in files:
        if f.content:
            text = f.content
            if len(text) > MAX_INLINE_CHARS:
                text = text[:MAX_INLINE_CHARS] + "\n[truncated]"
            header = f"--- {f.name} ({f.type}) ---"
            if f.description:
                header += f"\n{f.description}"
            parts.append(f"{header}\n{text}")
        else:
            parts.append(f"--- {f.name} ({f.type}, {f.size} bytes, not inlined) ---")
    return "\n\n".join(parts)


class FileUploader:
    """Stores uploaded files as records."""

    def __init__(
        self,
        store: RecordStoreProtocol,
        identity: IdentityProvider,
        *,
        app_name: str = DEFAULT_AGENT_APP_NAME,
    ):
        self._store = store
        self._identity = identity
        self._app_name = app_name

    async def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        user_address: str,
        *,
        agent_id: Optional[str] = None,
        description: Optional[str] = None,
        temporary: bool = False,
    ) -> FileAttachment:
        """
        Validate and store a file.

        Args:
            data: Raw file bytes
            filename: Original file name
            content_type: MIME type (must be in ALLOWED_TYPES)
            user_address: End user uploading the file
            agent_id: Agent the file belongs to (required unless temporary)
            description: Optional free-text description
            temporary: Store as a chat attachment instead of agent context

        Returns:
            FileAttachment referencing the new record

        Raises:
            InvalidFile: Size, type or encoding rejected
            Unauthorized: No writer identity
            StorageUnavailable: Write failed
        """
        validate_file(data, content_type)
        if not temporary and not agent_id:
            raise InvalidFile("Agent ID is required for file context")

        content = None
        if is_text_type(content_type):
            try:
                content = data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidFile(f"{filename} is not valid UTF-8 text") from e

        self._identity.get_active_identity()

        now = utc_now()
        tags = [
            Tag(TAG_APP_NAME, self._app_name),
            Tag(TAG_TYPE, TYPE_FILE_ATTACHMENT if temporary else TYPE_FILE_CONTEXT),
            Tag(TAG_CONTENT_TYPE, content_type),
            Tag(TAG_FILE_NAME, filename),
            Tag(TAG_FILE_SIZE, str(len(data))),
            Tag(TAG_USER_ADDRESS, user_address),
            Tag(TAG_UPLOADED_AT, format_utc(now)),
        ]
        if agent_id:
            tags.append(Tag(TAG_AGENT_ID, agent_id))
        if temporary:
            tags.append(Tag(TAG_TEMPORARY, "true"))
        if description:
            tags.append(Tag(TAG_DESCRIPTION, description))

        receipt = await self._store.write(data, tags)
        logger.info("Uploaded file %s (%d bytes) as record %s", filename, len(data), receipt.id)

        return FileAttachment(
            id=str(uuid.uuid4()),
            name=filename,
            type=content_type,
            size=len(data),
            record_id=receipt.id,
            content=content,
            uploaded_at=now,
            description=description or None,
        )

    async def fetch(self, record_id: str) -> bytes:
        """Raw bytes of an uploaded file."""
        return await self._store.fetch(record_id)
