"""
Entity versioning: how a mutable chat or agent is written to an
append-only store.

Each save of a logical entity appends a new record. The first record of
an entity is its *root* and carries no ``Root-TX`` tag. Every later record
carries ``Root-TX`` = root id, so the whole chain can be found from any
member and the root id works as a stable (mutable) reference.

Deletion is a record too: a tombstone whose deletion tag is ``true``.

There is no compare-and-swap. Two overlapping writes for the same entity
are resolved last-write-wins by store timestamp.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import StorageUnavailable
from .protocol import IdentityProvider, RecordIndexProtocol, RecordStoreProtocol, TagFilter
from .types import (
    TAG_APP_NAME,
    TAG_CONTENT_TYPE,
    TAG_CREATED_AT,
    TAG_DELETED_AT,
    TAG_MESSAGE_COUNT,
    TAG_OPTIMIZATION,
    TAG_ROOT_TX,
    TAG_TYPE,
    TAG_UPDATED_AT,
    TAG_USER_ADDRESS,
    CHAT,
    OPTIMIZATION_MUTABLE_REFERENCE,
    EntityKind,
    Record,
    Tag,
    format_utc,
    utc_now,
    validate_logical_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    """
    Outcome of one entity write.

    Attributes:
        record_id: Id of the record just written
        root_record_id: Root of the chain (mutable reference base).
            Equal to record_id when this write created the entity.
        is_update: False when no earlier record was found
        timestamp: Store timestamp of the new record (ms)
        mutable_url: Stable address resolving to the latest version
        snapshot: The snapshot as written (timestamps filled in)
    """
    record_id: str
    root_record_id: str
    is_update: bool
    timestamp: int
    mutable_url: str
    snapshot: Any = None


def chain_root(record: Record) -> str:
    """Root id of the chain a record belongs to."""
    return record.tag(TAG_ROOT_TX) or record.id


def build_tags(
    kind: EntityKind,
    snapshot,
    user_address: str,
    *,
    root_record_id: Optional[str],
    is_deletion: bool,
) -> list[Tag]:
    """
    Assemble the tag set for one entity record.

    Creation records get ``Created-At`` and no ``Root-TX``; update records
    get ``Root-TX`` and no ``Created-At``.
    """
    updated_at = format_utc(snapshot.updated_at)
    tags = [
        Tag(TAG_CONTENT_TYPE, "application/json"),
        Tag(TAG_APP_NAME, kind.app_name),
        Tag(TAG_TYPE, kind.type_value),
        Tag(TAG_USER_ADDRESS, user_address),
        Tag(kind.id_tag, snapshot.logical_id),
        Tag(kind.title_tag, snapshot.display_name),
        Tag(TAG_UPDATED_AT, updated_at),
        Tag(kind.deleted_tag, "true" if is_deletion else "false"),
        Tag(TAG_OPTIMIZATION, OPTIMIZATION_MUTABLE_REFERENCE),
    ]
    if kind.name == CHAT.name:
        tags.append(Tag(TAG_MESSAGE_COUNT, str(snapshot.unit_count)))

    if root_record_id is not None:
        tags.append(Tag(TAG_ROOT_TX, root_record_id))
    else:
        created = snapshot.created_at or snapshot.updated_at
        tags.append(Tag(TAG_CREATED_AT, format_utc(created)))

    if is_deletion:
        deleted_at = getattr(snapshot, "deleted_at", None) or snapshot.updated_at
        tags.append(Tag(TAG_DELETED_AT, format_utc(deleted_at)))
    return tags


class EntityWriter:
    """
    Writes new versions of chats and agents.

    One instance serves every entity kind; the kind is a parameter of
    each call.
    """

    def __init__(
        self,
        store: RecordStoreProtocol,
        index: RecordIndexProtocol,
        identity: IdentityProvider,
    ):
        self._store = store
        self._index = index
        self._identity = identity

    async def find_latest(
        self,
        kind: EntityKind,
        logical_id: str,
        user_address: str,
        owner: str,
    ) -> Optional[Record]:
        """Most recent indexed record for this entity, or None.

        A None here may only mean the previous write is not indexed yet.
        """
        records = await self._index.query(
            [
                TagFilter.eq(TAG_APP_NAME, kind.app_name),
                TagFilter.eq(TAG_TYPE, kind.type_value),
                TagFilter.eq(kind.id_tag, logical_id),
                TagFilter.eq(TAG_USER_ADDRESS, user_address),
            ],
            owners=[owner],
            order="DESC",
            limit=1,
        )
        return records[0] if records else None

    async def write(
        self,
        kind: EntityKind,
        logical_id: str,
        user_address: str,
        snapshot,
        *,
        is_deletion: bool = False,
        root_hint: Optional[str] = None,
    ) -> WriteResult:
        """
        Append a record holding ``snapshot`` as the entity's newest version.

        Args:
            kind: CHAT or AGENT (or a configured variant)
            logical_id: Application-level entity ID
            user_address: End user who owns the entity
            snapshot: ChatSession / Agent to store
            is_deletion: Write a tombstone
            root_hint: Chain root known to the caller, used when the index
                does not show the entity yet

        Returns:
            WriteResult with the new record id and the chain root

        Raises:
            Unauthorized: No writer identity; nothing is written
            StorageUnavailable: Index or store unreachable
        """
        validate_logical_id(logical_id)
        if snapshot.logical_id != logical_id:
            raise ValueError(
                f"Snapshot id {snapshot.logical_id!r} does not match {logical_id!r}"
            )
        # Fails fast with Unauthorized before any I/O
        identity = self._identity.get_active_identity()

        latest = await self.find_latest(kind, logical_id, user_address, identity.address)
        if latest is not None:
            root_record_id = chain_root(latest)
        else:
            root_record_id = root_hint or None
            if root_hint:
                logger.debug("%s %s not indexed yet, using root %s", kind.name, logical_id, root_hint)
        is_update = root_record_id is not None

        now = utc_now()
        created_at = snapshot.created_at or (None if is_update else now)
        snapshot = snapshot.with_timestamps(created_at, now)
        if is_deletion and not snapshot.is_deleted:
            snapshot = snapshot.with_deletion(now)

        tags = build_tags(
            kind, snapshot, user_address,
            root_record_id=root_record_id,
            is_deletion=is_deletion,
        )
        payload = json.dumps(snapshot.to_payload(), ensure_ascii=False, indent=2).encode("utf-8")

        receipt = await self._store.write(payload, tags)
        if not receipt.id:
            raise StorageUnavailable("Store returned an empty record id")

        base = root_record_id or receipt.id
        if is_deletion:
            logger.info("Deleted %s %s (root %s, record %s)", kind.name, logical_id, base, receipt.id)
        elif is_update:
            logger.info("Updated %s %s (root %s, record %s)", kind.name, logical_id, base, receipt.id)
        else:
            logger.info("Created %s %s (record %s)", kind.name, logical_id, receipt.id)

        return WriteResult(
            record_id=receipt.id,
            root_record_id=base,
            is_update=is_update,
            timestamp=receipt.timestamp,
            mutable_url=self._store.mutable_url(base),
            snapshot=snapshot,
        )
