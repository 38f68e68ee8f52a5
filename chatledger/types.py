"""
Data types for chat and agent records.

Chats and agents are *logical entities*: mutable views over a chain of
immutable records that share a logical ID tag. The snapshot classes here
are the deserialized payload of one record in that chain.
"""

import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional


# ---------------------------------------------------------------------------
# Tag names (exact strings, shared by writers and readers)
# ---------------------------------------------------------------------------

TAG_APP_NAME = "App-Name"
TAG_TYPE = "Type"
TAG_CONTENT_TYPE = "Content-Type"
TAG_USER_ADDRESS = "User-Address"
TAG_CHAT_ID = "Chat-ID"
TAG_AGENT_ID = "Agent-ID"
TAG_ROOT_TX = "Root-TX"
TAG_CREATED_AT = "Created-At"
TAG_UPDATED_AT = "Updated-At"
TAG_IS_DELETED = "Is-Deleted"
TAG_DELETED = "Deleted"
TAG_DELETED_AT = "Deleted-At"
TAG_MESSAGE_COUNT = "Message-Count"
TAG_CHAT_TITLE = "Chat-Title"
TAG_AGENT_NAME = "Agent-Name"
TAG_OPTIMIZATION = "Optimization"
TAG_FILE_NAME = "File-Name"
TAG_FILE_SIZE = "File-Size"
TAG_UPLOADED_AT = "Uploaded-At"
TAG_DESCRIPTION = "Description"
TAG_TEMPORARY = "Temporary"

# Values of the Type tag
TYPE_CHAT_SESSION = "chat-session"
TYPE_AGENT_PROMPT = "agent-prompt"
TYPE_FILE_CONTEXT = "file-context"
TYPE_FILE_ATTACHMENT = "file-attachment"

DEFAULT_CHAT_APP_NAME = "ChatAppChats"
DEFAULT_AGENT_APP_NAME = "ChatAppAgents"

OPTIMIZATION_MUTABLE_REFERENCE = "mutable-reference"

# Save status of a local cache entry
NOT_SAVED = "not_saved"
PENDING = "pending"
SAVED = "saved"
ERROR = "error"
SAVE_STATUSES = frozenset({NOT_SAVED, PENDING, SAVED, ERROR})

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

DEFAULT_CHAT_TITLE = "New Chat"
UNTITLED_CHAT = "Untitled Chat"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_utc(dt: datetime) -> str:
    """Format a datetime the way tags and payloads store it.

    Millisecond precision with a ``Z`` suffix, e.g.
    ``2026-01-15T09:30:00.125Z``.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical millisecond form as well as plain ISO strings
    with or without 'Z' / '+00:00' suffixes.
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_optional_date(value: Any) -> Optional[datetime]:
    """Normalize a date-like payload field (string, epoch ms, datetime) or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Invalid date: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Epoch timestamp out of range: {value!r}") from e
    return parse_utc_timestamp(str(value))


def _parse_flag(value: Any) -> bool:
    """Read a boolean payload flag; strings count only when they say "true"."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _format_optional_date(dt: Optional[datetime]) -> Optional[str]:
    return format_utc(dt) if dt is not None else None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Tag(NamedTuple):
    """A name/value annotation attached to a record at write time."""
    name: str
    value: str


def make_tags(pairs: dict[str, str]) -> tuple[Tag, ...]:
    """Build an ordered tag tuple from a dict (insertion order is kept)."""
    return tuple(Tag(k, v) for k, v in pairs.items())


@dataclass(frozen=True)
class Record:
    """
    One immutable entry in the record store.

    ``payload`` is only populated when the record was fetched by id;
    index queries return records with tags and timestamp only.
    """
    id: str
    tags: tuple[Tag, ...]
    timestamp: int  # store-assigned, milliseconds since epoch
    owner: str = ""
    payload: Optional[bytes] = None

    def tag(self, name: str) -> Optional[str]:
        """Value of the first tag with this name, or None."""
        for t in self.tags:
            if t.name == name:
                return t.value
        return None

    def has_tag(self, name: str) -> bool:
        return any(t.name == name for t in self.tags)

    @property
    def tag_dict(self) -> dict[str, str]:
        """Tags as a dict (first occurrence wins)."""
        out: dict[str, str] = {}
        for t in self.tags:
            out.setdefault(t.name, t.value)
        return out


@dataclass(frozen=True)
class WriteReceipt:
    """What the store returns for a successful write."""
    id: str
    timestamp: int


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A single message unit in a chat."""
    role: str
    content: str
    agent: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"role": self.role, "content": self.content}
        if self.agent:
            d["agent"] = self.agent
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Message":
        if not isinstance(d, dict):
            raise ValueError(f"Message entry is not an object: {d!r}")
        role = d.get("role")
        if role not in (ROLE_USER, ROLE_ASSISTANT):
            raise ValueError(f"Invalid message role: {role!r}")
        content = d.get("content", "")
        if not isinstance(content, str):
            raise ValueError("Message content must be a string")
        return cls(role=role, content=content, agent=d.get("agent") or None)


@dataclass(frozen=True)
class FileAttachment:
    """A file uploaded as agent context or chat attachment."""
    id: str
    name: str
    type: str
    size: int
    record_id: Optional[str] = None
    content: Optional[str] = None  # extracted text for text-like files
    uploaded_at: Optional[datetime] = None
    description: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "size": self.size,
            "recordId": self.record_id,
            "uploadedAt": _format_optional_date(self.uploaded_at),
        }
        if self.content is not None:
            d["content"] = self.content
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "FileAttachment":
        if not isinstance(d, dict):
            raise ValueError(f"File entry is not an object: {d!r}")
        return cls(
            id=str(d["id"]),
            name=str(d.get("name", "")),
            type=str(d.get("type", "")),
            size=int(d.get("size", 0)),
            # Older payloads used irysId for the record id
            record_id=d.get("recordId") or d.get("irysId"),
            content=d.get("content"),
            uploaded_at=_parse_optional_date(d.get("uploadedAt")),
            description=d.get("description") or None,
        )


@dataclass(frozen=True)
class ChatSession:
    """
    Snapshot of a chat session.

    Attributes:
        id: Logical chat ID (``Chat-ID`` tag)
        title: Display title (``Chat-Title`` tag)
        messages: Conversation so far
        user_address: End user who owns the chat
        created_at: Set once, when the chain's root was written
        updated_at: Time of the write that produced this snapshot
        is_deleted: Tombstone flag
    """
    id: str
    title: str = DEFAULT_CHAT_TITLE
    messages: tuple[Message, ...] = ()
    user_address: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def logical_id(self) -> str:
        return self.id

    @property
    def display_name(self) -> str:
        return self.title

    @property
    def unit_count(self) -> int:
        return len(self.messages)

    @property
    def last_message(self) -> Optional[str]:
        return self.messages[-1].content if self.messages else None

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    def content_key(self) -> tuple:
        """Fields that define whether two snapshots differ in content."""
        return (self.title, self.messages)

    def with_messages(self, messages) -> "ChatSession":
        return replace(self, messages=tuple(messages))

    def with_deletion(self, at: datetime) -> "ChatSession":
        return replace(self, is_deleted=True, deleted_at=at)

    def with_timestamps(self, created_at, updated_at) -> "ChatSession":
        return replace(self, created_at=created_at, updated_at=updated_at)

    def to_payload(self) -> dict:
        d: dict[str, Any] = {
            "chatId": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "userAddress": self.user_address,
            "createdAt": _format_optional_date(self.created_at),
            "updatedAt": _format_optional_date(self.updated_at),
            "isDeleted": self.is_deleted,
            "deletedAt": _format_optional_date(self.deleted_at),
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_payload(cls, d: dict) -> "ChatSession":
        chat_id = d.get("chatId") or d.get("id")
        if not chat_id:
            raise ValueError("Chat payload has no chatId")
        messages = d.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("Chat payload messages must be a list")
        return cls(
            id=str(chat_id),
            title=d.get("title") or UNTITLED_CHAT,
            messages=tuple(Message.from_dict(m) for m in messages),
            user_address=d.get("userAddress", ""),
            created_at=_parse_optional_date(d.get("createdAt")),
            updated_at=_parse_optional_date(d.get("updatedAt")),
            is_deleted=_parse_flag(d.get("isDeleted", False)),
            deleted_at=_parse_optional_date(d.get("deletedAt")),
        )


@dataclass(frozen=True)
class Agent:
    """Snapshot of an agent: a system-prompt preset with file context."""
    id: str
    name: str
    system_prompt: str
    description: str = ""
    file_context: tuple[FileAttachment, ...] = ()
    user_address: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def logical_id(self) -> str:
        return self.id

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def is_deleted(self) -> bool:
        return self.deleted

    @property
    def unit_count(self) -> int:
        return len(self.file_context)

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    def content_key(self) -> tuple:
        return (self.name, self.description, self.system_prompt, self.file_context)

    def with_deletion(self, at: datetime) -> "Agent":
        return replace(self, deleted=True, deleted_at=at)

    def with_timestamps(self, created_at, updated_at) -> "Agent":
        return replace(self, created_at=created_at, updated_at=updated_at)

    def to_payload(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "systemPrompt": self.system_prompt,
            "fileContext": [f.to_dict() for f in self.file_context],
            "userAddress": self.user_address,
            "deleted": self.deleted,
            "createdAt": _format_optional_date(self.created_at),
            "updatedAt": _format_optional_date(self.updated_at),
            "deletedAt": _format_optional_date(self.deleted_at),
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_payload(cls, d: dict) -> "Agent":
        if not d.get("id"):
            raise ValueError("Agent payload has no id")
        files = d.get("fileContext") or []
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            system_prompt=d.get("systemPrompt", ""),
            description=d.get("description") or "",
            file_context=tuple(FileAttachment.from_dict(f) for f in files),
            user_address=d.get("userAddress", ""),
            created_at=_parse_optional_date(d.get("createdAt")),
            updated_at=_parse_optional_date(d.get("updatedAt")),
            deleted=_parse_flag(d.get("deleted", False)),
            deleted_at=_parse_optional_date(d.get("deletedAt")),
        )


# ---------------------------------------------------------------------------
# Entity kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityKind:
    """
    Everything the write and read paths need to know about one kind of
    logical entity. Chats and agents share one implementation of each
    path, parameterized by this.
    """
    name: str                 # "chat" / "agent"
    app_name: str             # App-Name tag value
    type_value: str           # Type tag value
    id_tag: str               # tag carrying the logical ID
    title_tag: str            # tag carrying the display name
    deleted_tag: str          # tombstone tag
    snapshot_type: type
    load_limit: int = 100     # records per index query on load

    def is_deleted(self, record: Record) -> bool:
        """Tombstone check on a record's tags.

        Both deletion tag spellings are honored so records written by
        either kind's older writers resolve the same way.
        """
        value = record.tag(self.deleted_tag)
        if value is None:
            value = record.tag(TAG_IS_DELETED) or record.tag(TAG_DELETED)
        return (value or "").strip().lower() == "true"

    def logical_id(self, record: Record) -> Optional[str]:
        return record.tag(self.id_tag)

    def snapshot_from_payload(self, data: dict):
        return self.snapshot_type.from_payload(data)


CHAT = EntityKind(
    name="chat",
    app_name=DEFAULT_CHAT_APP_NAME,
    type_value=TYPE_CHAT_SESSION,
    id_tag=TAG_CHAT_ID,
    title_tag=TAG_CHAT_TITLE,
    deleted_tag=TAG_IS_DELETED,
    snapshot_type=ChatSession,
)

AGENT = EntityKind(
    name="agent",
    app_name=DEFAULT_AGENT_APP_NAME,
    type_value=TYPE_AGENT_PROMPT,
    id_tag=TAG_AGENT_ID,
    title_tag=TAG_AGENT_NAME,
    deleted_tag=TAG_DELETED,
    snapshot_type=Agent,
    load_limit=200,
)

KINDS = {CHAT.name: CHAT, AGENT.name: AGENT}


def kind_by_name(name: str) -> EntityKind:
    try:
        return KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {name!r}. Use one of {sorted(KINDS)}")


@dataclass(frozen=True)
class LogicalEntity:
    """
    A resolved logical entity: the latest snapshot of a record chain.

    Attributes:
        kind: Entity kind name ("chat" / "agent")
        logical_id: Application-level ID
        root_record_id: First record of the chain (mutable reference base)
        latest_record_id: Record with the greatest store timestamp
        latest_timestamp: That record's store timestamp (ms)
        snapshot: Deserialized payload of the latest record
        is_deleted: Tombstone flag of the latest record
        version_count: Records seen for this ID in the resolved set
        loading_method: "mutable-reference" or "direct"
        inconsistent: Chain linkage violated (see resolver)
    """
    kind: str
    logical_id: str
    root_record_id: str
    latest_record_id: str
    latest_timestamp: int
    snapshot: Any
    is_deleted: bool = False
    version_count: int = 1
    loading_method: str = "direct"
    inconsistent: bool = False


# IDs: printable characters minus control chars and a small blocklist.
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f\\`<>|;"\']')
MAX_ID_LENGTH = 256


def validate_logical_id(id: str) -> None:
    """Validate a chat/agent ID before it is used as a tag value."""
    if not id or len(id) > MAX_ID_LENGTH:
        raise ValueError(f"ID must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValueError(f"ID contains invalid characters: {id!r}")


def new_logical_id(prefix: str) -> str:
    """Fresh logical ID such as ``chat-1768469400125-k3j9x0a2m``."""
    millis = int(utc_now().timestamp() * 1000)
    return f"{prefix}-{millis}-{secrets.token_hex(5)[:9]}"
