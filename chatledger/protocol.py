"""
Protocol definitions for the collaborators the core talks to.

Defines interface contracts for:
- RecordStoreProtocol: append-only, content-addressed record storage
- RecordIndexProtocol: tag-query index over the store (eventually consistent)
- IdentityProvider: the authenticated writer identity
- CompletionProvider: streaming text completion (see providers.base)
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

from .types import Record, Tag, WriteReceipt


@dataclass(frozen=True)
class Identity:
    """An authenticated identity. Only the address is visible to the core."""
    address: str


@dataclass(frozen=True)
class TagFilter:
    """Index predicate: record has tag ``name`` with one of ``values``."""
    name: str
    values: tuple[str, ...]

    @classmethod
    def eq(cls, name: str, value: str) -> "TagFilter":
        return cls(name, (value,))

    def matches(self, record: Record) -> bool:
        return any(t.name == self.name and t.value in self.values for t in record.tags)


@runtime_checkable
class RecordStoreProtocol(Protocol):
    """
    Append-only record storage.

    Implemented by:
    - LocalRecordStore (SQLite record log)
    - GatewayRecordStore (HTTP upload service + gateway)
    """

    async def write(self, payload: bytes, tags: Sequence[Tag]) -> WriteReceipt: ...

    async def fetch(self, record_id: str) -> bytes: ...

    async def fetch_latest_via_root(self, root_record_id: str) -> Optional[bytes]:
        """Payload of the newest record on this root, or None if unsupported/unknown."""
        ...

    def mutable_url(self, root_record_id: str) -> str: ...

    async def close(self) -> None: ...


@runtime_checkable
class RecordIndexProtocol(Protocol):
    """
    Tag-query index over the record store.

    There is a delay between a write and its visibility here. Callers
    must not treat "not found" as "never existed" for fresh writes.

    Implemented by:
    - LocalRecordStore (same SQLite log, optional simulated delay)
    - GraphQLIndex (remote GraphQL service)
    """

    async def query(
        self,
        tags: Sequence[TagFilter],
        *,
        owners: Optional[Sequence[str]] = None,
        order: str = "DESC",
        limit: int = 100,
    ) -> list[Record]: ...

    async def close(self) -> None: ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Source of the writer identity. Raises Unauthorized when absent."""

    def get_active_identity(self) -> Identity: ...
