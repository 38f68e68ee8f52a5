"""
Version resolution: turn a flat set of records into the current state of
each logical entity.

Records are grouped by their logical-ID tag. Within a group the record
with the greatest store timestamp is the latest version; arrival order
from the index is never trusted. The latest record's deletion tag decides
whether the entity is alive. Live entities get their latest payload
fetched, through the mutable reference when possible.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from .errors import DeserializationFailure, IndexingNotYetVisible, StorageUnavailable, Unauthorized
from .protocol import IdentityProvider, RecordIndexProtocol, RecordStoreProtocol, TagFilter
from .types import (
    TAG_APP_NAME,
    TAG_ROOT_TX,
    TAG_TYPE,
    TAG_UPDATED_AT,
    TAG_USER_ADDRESS,
    CHAT,
    EntityKind,
    LogicalEntity,
    Record,
    parse_utc_timestamp,
)

logger = logging.getLogger(__name__)

ORDER_ACTIVITY = "activity"
ORDER_CREATED = "created"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

LOADING_MUTABLE = "mutable-reference"
LOADING_DIRECT = "direct"


@dataclass
class EntityChain:
    """All records seen for one logical ID, newest first."""
    kind: EntityKind
    logical_id: str
    records: list[Record] = field(default_factory=list)
    root_record_id: str = ""
    inconsistent: bool = False

    @property
    def latest(self) -> Record:
        return self.records[0]

    @property
    def is_deleted(self) -> bool:
        return self.kind.is_deleted(self.latest)

    @property
    def version_count(self) -> int:
        return len(self.records)


def _record_key(record: Record):
    return (record.timestamp, record.id)


def _find_root(records: list[Record]) -> tuple[str, bool]:
    """
    Determine the chain root of a group (records newest first).

    Returns (root_id, inconsistent). A consistent chain has at most one
    record without Root-TX, and every Root-TX value names that record.
    """
    rootless = [r for r in records if not r.has_tag(TAG_ROOT_TX)]
    referenced = {r.tag(TAG_ROOT_TX) for r in records if r.has_tag(TAG_ROOT_TX)}

    if not referenced:
        # Oldest root-less record started the chain
        root = rootless[-1].id
        return root, len(rootless) > 1

    if len(referenced) == 1:
        root = next(iter(referenced))
        extra_roots = [r for r in rootless if r.id != root]
        return root, bool(extra_roots)

    latest = records[0]
    return latest.tag(TAG_ROOT_TX) or latest.id, True


def group_records(
    records: Sequence[Record],
    kind: EntityKind,
    user_address: Optional[str] = None,
) -> list[EntityChain]:
    """
    Group records into per-entity chains.

    Records of another kind or app, of another user (when ``user_address``
    is given), or without a logical ID are ignored. Duplicate record ids
    (overlapping index pages) are counted once.

    Deleted entities are included; check ``EntityChain.is_deleted``.

    Returns:
        Chains ordered by their latest record, newest first
    """
    groups: dict[str, EntityChain] = {}
    seen: set[str] = set()

    for record in sorted(records, key=_record_key, reverse=True):
        if record.id in seen:
            continue
        seen.add(record.id)
        if record.tag(TAG_TYPE) != kind.type_value:
            continue
        app = record.tag(TAG_APP_NAME)
        if app is not None and app != kind.app_name:
            continue
        if user_address is not None and record.tag(TAG_USER_ADDRESS) != user_address:
            continue
        logical_id = kind.logical_id(record)
        if not logical_id:
            continue
        chain = groups.get(logical_id)
        if chain is None:
            chain = groups[logical_id] = EntityChain(kind=kind, logical_id=logical_id)
        chain.records.append(record)

    for chain in groups.values():
        chain.root_record_id, chain.inconsistent = _find_root(chain.records)
        if chain.inconsistent:
            logger.warning(
                "Inconsistent record chain for %s %s: %d records, using root %s",
                kind.name, chain.logical_id, chain.version_count, chain.root_record_id,
            )

    return list(groups.values())


def decode_snapshot(kind: EntityKind, record_id: str, payload: bytes):
    """Deserialize a payload into the kind's snapshot type.

    Raises:
        DeserializationFailure: Not UTF-8 JSON, or not a valid snapshot
    """
    try:
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("payload is not a JSON object")
        return kind.snapshot_from_payload(data)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise DeserializationFailure(record_id, str(e)) from e


def _updated_at_tag(record: Record) -> Optional[datetime]:
    value = record.tag(TAG_UPDATED_AT)
    if not value:
        return None
    try:
        return parse_utc_timestamp(value)
    except ValueError:
        return None


def sort_entities(entities: list[LogicalEntity], order: Optional[str]) -> list[LogicalEntity]:
    """Sort by snapshot activity or creation time, newest first; None keeps order."""
    if order is None:
        return entities
    if order == ORDER_ACTIVITY:
        def key(e):
            return (e.snapshot.last_activity or _EPOCH, e.latest_timestamp)
    elif order == ORDER_CREATED:
        def key(e):
            return (e.snapshot.created_at or _EPOCH, e.latest_timestamp)
    else:
        raise ValueError(f"Unknown order: {order!r}")
    return sorted(entities, key=key, reverse=True)


class VersionResolver:
    """
    Reconstructs current chats/agents from the record store.

    Read-path failures degrade: an unreadable record is skipped with a
    warning and the rest of the batch is still returned.
    """

    def __init__(
        self,
        store: RecordStoreProtocol,
        index: RecordIndexProtocol,
        identity: Optional[IdentityProvider] = None,
        *,
        use_mutable_refs: bool = True,
        fetch_concurrency: int = 8,
    ):
        self._store = store
        self._index = index
        self._identity = identity
        self._use_mutable_refs = use_mutable_refs
        self._fetch_concurrency = fetch_concurrency

    async def _fetch_via_root(self, chain: EntityChain):
        """Try the mutable reference. Returns a fresh snapshot or None."""
        try:
            payload = await self._store.fetch_latest_via_root(chain.root_record_id)
        except StorageUnavailable as e:
            logger.debug("Mutable reference %s failed: %s", chain.root_record_id, e)
            return None
        if payload is None:
            return None
        try:
            snapshot = decode_snapshot(chain.kind, chain.root_record_id, payload)
        except DeserializationFailure as e:
            logger.debug("Mutable reference payload unreadable: %s", e)
            return None
        if snapshot.logical_id != chain.logical_id:
            logger.warning(
                "Mutable reference %s resolved to %s, expected %s",
                chain.root_record_id, snapshot.logical_id, chain.logical_id,
            )
            return None
        expected = _updated_at_tag(chain.latest)
        if expected is not None and (snapshot.updated_at is None or snapshot.updated_at < expected):
            # Reference not yet advanced to the latest record
            logger.debug("Mutable reference %s is stale", chain.root_record_id)
            return None
        return snapshot

    async def _load_entity(self, chain: EntityChain, sem: asyncio.Semaphore) -> Optional[LogicalEntity]:
        async with sem:
            snapshot = None
            method = LOADING_DIRECT
            if self._use_mutable_refs:
                snapshot = await self._fetch_via_root(chain)
                if snapshot is not None:
                    method = LOADING_MUTABLE
            if snapshot is None:
                try:
                    payload = await self._store.fetch(chain.latest.id)
                    snapshot = decode_snapshot(chain.kind, chain.latest.id, payload)
                except StorageUnavailable as e:
                    logger.warning("Skipping %s %s: %s", chain.kind.name, chain.logical_id, e)
                    return None
                except DeserializationFailure as e:
                    logger.warning("Skipping %s %s: %s", chain.kind.name, chain.logical_id, e)
                    return None

        if snapshot.is_deleted:
            logger.debug("Skipping %s %s: payload marks it deleted", chain.kind.name, chain.logical_id)
            return None

        return LogicalEntity(
            kind=chain.kind.name,
            logical_id=chain.logical_id,
            root_record_id=chain.root_record_id,
            latest_record_id=chain.latest.id,
            latest_timestamp=chain.latest.timestamp,
            snapshot=snapshot,
            is_deleted=False,
            version_count=chain.version_count,
            loading_method=method,
            inconsistent=chain.inconsistent,
        )

    async def resolve(
        self,
        records: Sequence[Record],
        user_address: str,
        *,
        kind: EntityKind = CHAT,
        order: Optional[str] = ORDER_ACTIVITY,
    ) -> list[LogicalEntity]:
        """
        Collapse records into live entities with their latest snapshots.

        Args:
            records: Index results (any order, may include other users)
            user_address: End user whose entities to return
            kind: Entity kind to resolve
            order: "activity" (default), "created", or None for chain order

        Returns:
            Live entities only; tombstoned IDs are absent
        """
        chains = group_records(records, kind, user_address)
        live = [c for c in chains if not c.is_deleted]
        if len(live) < len(chains):
            logger.debug("Filtered %d deleted %s(s)", len(chains) - len(live), kind.name)

        sem = asyncio.Semaphore(self._fetch_concurrency)
        loaded = await asyncio.gather(*(self._load_entity(c, sem) for c in live))
        entities = [e for e in loaded if e is not None]

        if len(entities) < len(live):
            logger.info(
                "Resolved %d of %d live %s(s)", len(entities), len(live), kind.name
            )
        return sort_entities(entities, order)

    def _owners(self) -> Optional[list[str]]:
        """Restrict queries to our writer identity when we have one."""
        if self._identity is None:
            return None
        try:
            return [self._identity.get_active_identity().address]
        except Unauthorized:
            logger.debug("No writer identity, querying without owner filter")
            return None

    async def query_records(
        self,
        kind: EntityKind,
        user_address: str,
        *,
        logical_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        """Index query for one user's records of a kind (optionally one entity)."""
        filters = [
            TagFilter.eq(TAG_APP_NAME, kind.app_name),
            TagFilter.eq(TAG_TYPE, kind.type_value),
            TagFilter.eq(TAG_USER_ADDRESS, user_address),
        ]
        if logical_id is not None:
            filters.append(TagFilter.eq(kind.id_tag, logical_id))
        if limit is None:
            limit = kind.load_limit
        return await self._index.query(filters, owners=self._owners(), order="DESC", limit=limit)

    async def load(
        self,
        kind: EntityKind,
        user_address: str,
        *,
        limit: Optional[int] = None,
        order: Optional[str] = ORDER_ACTIVITY,
    ) -> list[LogicalEntity]:
        """Query the index and resolve every live entity of a kind for a user."""
        records = await self.query_records(kind, user_address, limit=limit)
        logger.debug("Index returned %d %s record(s)", len(records), kind.name)
        return await self.resolve(records, user_address, kind=kind, order=order)

    async def load_one(
        self,
        kind: EntityKind,
        logical_id: str,
        user_address: str,
    ) -> Optional[LogicalEntity]:
        """
        Resolve a single entity.

        Returns:
            The live entity; an entity with ``is_deleted=True`` and no
            snapshot for a tombstoned ID; None when its latest payload
            could not be read

        Raises:
            IndexingNotYetVisible: The index has no records for this ID
        """
        records = await self.query_records(kind, user_address, logical_id=logical_id)
        chains = group_records(records, kind, user_address)
        if not chains:
            raise IndexingNotYetVisible(f"No indexed records for {kind.name} {logical_id}")
        chain = chains[0]
        if chain.is_deleted:
            return LogicalEntity(
                kind=kind.name,
                logical_id=logical_id,
                root_record_id=chain.root_record_id,
                latest_record_id=chain.latest.id,
                latest_timestamp=chain.latest.timestamp,
                snapshot=None,
                is_deleted=True,
                version_count=chain.version_count,
                inconsistent=chain.inconsistent,
            )
        return await self._load_entity(chain, asyncio.Semaphore(1))
