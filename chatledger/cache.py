"""
Local session cache: optimistic in-memory state over the record store.

The UI mutates snapshots here and sees the result at once. Writes to the
store happen on flush: explicitly, once per completed assistant turn, or
in the background when the user switches away from an entity with
unsaved changes.

The index lags behind writes, so the cache is the source of truth for
anything written in this session. Remote state only replaces a cache
entry when the entry has no unsaved content and the remote snapshot is
at least as new.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import ChatLedgerError, EntityNotFound, IndexingNotYetVisible, StorageUnavailable, Unauthorized
from .resolver import VersionResolver
from .types import (
    ERROR,
    NOT_SAVED,
    PENDING,
    ROLE_ASSISTANT,
    SAVED,
    EntityKind,
    LogicalEntity,
    utc_now,
    validate_logical_id,
)
from .versioning import EntityWriter, WriteResult

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class CacheEntry:
    """
    One cached entity.

    Attributes:
        snapshot: Current local content
        save_status: not_saved / pending / saved / error
        flushed_key: content_key() of the last content known to be stored
        last_saved_unit_count: Unit count at the last successful flush
        remote_unit_count: Unit count of the newest remote snapshot seen
        root_record_id: Chain root once known
        latest_record_id: Newest record we wrote or resolved
        written_this_session: At least one flush succeeded this session
        last_error: Error of the most recent failed flush
    """
    snapshot: Any
    save_status: str = SAVED
    flushed_key: Optional[tuple] = None
    last_saved_unit_count: int = 0
    remote_unit_count: int = 0
    root_record_id: Optional[str] = None
    latest_record_id: Optional[str] = None
    written_this_session: bool = False
    last_error: Optional[Exception] = None
    flushing: bool = False
    flush_queued: bool = False
    idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self):
        self.idle.set()

    @property
    def logical_id(self) -> str:
        return self.snapshot.logical_id

    @property
    def dirty(self) -> bool:
        """Local content differs from the last stored content."""
        return self.snapshot.content_key() != self.flushed_key


class SessionCache:
    """
    Per-kind cache of chats or agents for one connected user.

    Lifecycle: ``init(user)`` when an identity connects, ``teardown()``
    when it disconnects. Between the two every operation acts on that
    user's entities.
    """

    def __init__(self, kind: EntityKind, writer: EntityWriter, resolver: VersionResolver):
        self._kind = kind
        self._writer = writer
        self._resolver = resolver
        self._user_address: Optional[str] = None
        self._entries: dict[str, CacheEntry] = {}
        self._tombstones: set[str] = set()
        self._active_id: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def kind(self) -> EntityKind:
        return self._kind

    @property
    def user_address(self) -> Optional[str]:
        return self._user_address

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def _require_user(self) -> str:
        if self._user_address is None:
            raise Unauthorized(f"{self._kind.name} cache is not initialized for a user")
        return self._user_address

    def _entry(self, logical_id: str) -> CacheEntry:
        entry = self._entries.get(logical_id)
        if entry is None:
            raise EntityNotFound(f"{self._kind.name} {logical_id} not found")
        return entry

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self, user_address: str, *, load: bool = True) -> None:
        """Start a session for ``user_address``, loading remote state unless ``load`` is False."""
        if not user_address:
            raise Unauthorized("No user address")
        if self._user_address is not None:
            await self.teardown()
        self._user_address = user_address
        logger.debug("Initialized %s cache for %s", self._kind.name, user_address)
        if load:
            await self.refresh()

    async def teardown(self) -> None:
        """Wait for in-flight flushes, then forget everything."""
        await self.drain()
        self._entries.clear()
        self._tombstones.clear()
        self._active_id = None
        self._user_address = None

    async def drain(self) -> None:
        """Wait until all background flushes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def entities(self) -> list:
        """Cached snapshots, most recent activity first."""
        entries = sorted(
            self._entries.values(),
            key=lambda e: e.snapshot.last_activity or _EPOCH,
            reverse=True,
        )
        return [e.snapshot for e in entries]

    def get_snapshot(self, logical_id: str):
        return self._entry(logical_id).snapshot

    def save_status(self, logical_id: str) -> str:
        return self._entry(logical_id).save_status

    def get_entry(self, logical_id: str) -> CacheEntry:
        """Cache bookkeeping for one entity (status, counts, root)."""
        return self._entry(logical_id)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._entries

    # -------------------------------------------------------------------------
    # Local mutations
    # -------------------------------------------------------------------------

    def create(self, snapshot, *, unsaved: bool = False) -> None:
        """
        Add a new, not yet stored entity and make it active.

        By default the entity is an empty placeholder and counts as saved:
        there is nothing to store until it is mutated. With ``unsaved=True``
        it starts as not_saved so the next flush writes it.
        """
        self._require_user()
        validate_logical_id(snapshot.logical_id)
        if snapshot.logical_id in self._entries or snapshot.logical_id in self._tombstones:
            raise ValueError(f"{self._kind.name} {snapshot.logical_id} already exists")
        if snapshot.created_at is None:
            snapshot = snapshot.with_timestamps(utc_now(), snapshot.updated_at)

        self._schedule_flush(self._active_id)
        self._entries[snapshot.logical_id] = CacheEntry(
            snapshot=snapshot,
            save_status=NOT_SAVED if unsaved else SAVED,
            flushed_key=None if unsaved else snapshot.content_key(),
        )
        self._active_id = snapshot.logical_id

    def mutate(self, logical_id: str, snapshot) -> None:
        """Replace the local snapshot. Only a content change marks it unsaved."""
        entry = self._entry(logical_id)
        if snapshot.logical_id != logical_id:
            raise ValueError(f"Snapshot id {snapshot.logical_id!r} does not match {logical_id!r}")
        entry.snapshot = snapshot
        if entry.save_status != PENDING:
            entry.save_status = NOT_SAVED if entry.dirty else SAVED

    async def set_active(self, logical_id: str):
        """
        Switch the active entity.

        Unsaved changes of the previously active entity are flushed in
        the background. The target comes from the cache unless remote
        state is known to be ahead of it.

        Returns:
            The target's snapshot

        Raises:
            EntityNotFound: Unknown locally and remotely, or deleted
        """
        user = self._require_user()
        if logical_id in self._tombstones:
            raise EntityNotFound(f"{self._kind.name} {logical_id} was deleted")

        previous = self._active_id
        if previous is not None and previous != logical_id:
            self._schedule_flush(previous)

        entry = self._entries.get(logical_id)
        if entry is None or entry.snapshot.unit_count < entry.remote_unit_count:
            entry = await self._pull(logical_id, user, entry)

        self._active_id = logical_id
        return entry.snapshot

    async def _pull(self, logical_id: str, user: str, entry: Optional[CacheEntry]) -> CacheEntry:
        """Load one entity through the resolver, falling back to ``entry``."""
        try:
            remote = await self._resolver.load_one(self._kind, logical_id, user)
        except IndexingNotYetVisible:
            if entry is None:
                raise EntityNotFound(f"{self._kind.name} {logical_id} not found")
            logger.debug("%s %s not indexed yet, keeping cached copy", self._kind.name, logical_id)
            return entry
        except StorageUnavailable as e:
            if entry is None:
                raise
            logger.warning("Could not load %s %s, keeping cached copy: %s", self._kind.name, logical_id, e)
            return entry

        if remote is None:
            if entry is None:
                raise EntityNotFound(f"{self._kind.name} {logical_id} could not be read")
            return entry
        if remote.is_deleted:
            self._entries.pop(logical_id, None)
            self._tombstones.add(logical_id)
            raise EntityNotFound(f"{self._kind.name} {logical_id} was deleted")

        if entry is None or entry.snapshot.unit_count < remote.snapshot.unit_count:
            entry = self._adopt(remote)
        else:
            entry.remote_unit_count = remote.snapshot.unit_count
        return entry

    def _adopt(self, remote: LogicalEntity) -> CacheEntry:
        """Replace (or add) the cache entry with a resolved remote entity."""
        snapshot = remote.snapshot
        units = snapshot.unit_count
        entry = CacheEntry(
            snapshot=snapshot,
            flushed_key=snapshot.content_key(),
            last_saved_unit_count=units,
            remote_unit_count=units,
            root_record_id=remote.root_record_id,
            latest_record_id=remote.latest_record_id,
        )
        old = self._entries.get(remote.logical_id)
        if old is not None:
            entry.written_this_session = old.written_this_session
        self._entries[remote.logical_id] = entry
        return entry

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def flush(self, logical_id: str) -> Optional[WriteResult]:
        """
        Write the current snapshot as a new version.

        A flush requested while one is already running for the same ID is
        queued and runs once after it, if content still differs.

        Returns:
            The WriteResult of the last write, or None when nothing was
            written (clean entry, or queued behind a running flush)

        Raises:
            EntityNotFound: Unknown or deleted ID
            Unauthorized, StorageUnavailable: Write failed; the entry keeps
                its content and is marked ``error``
        """
        user = self._require_user()
        entry = self._entry(logical_id)
        if entry.flushing:
            entry.flush_queued = True
            logger.debug("Flush of %s %s queued behind running flush", self._kind.name, logical_id)
            return None
        if not entry.dirty and entry.save_status == SAVED:
            return None

        entry.flushing = True
        entry.idle.clear()
        try:
            result = None
            while True:
                entry.flush_queued = False
                result = await self._write(entry, user)
                if logical_id in self._tombstones:
                    break
                if not (entry.flush_queued and entry.dirty):
                    break
            return result
        finally:
            entry.flushing = False
            entry.idle.set()

    async def _write(self, entry: CacheEntry, user: str) -> WriteResult:
        snapshot = entry.snapshot
        key = snapshot.content_key()
        entry.save_status = PENDING
        try:
            result = await self._writer.write(
                self._kind, snapshot.logical_id, user, snapshot,
                root_hint=entry.root_record_id,
            )
        except Exception as e:
            entry.save_status = ERROR
            entry.last_error = e
            logger.warning("Saving %s %s failed: %s", self._kind.name, snapshot.logical_id, e)
            raise

        entry.last_error = None
        entry.root_record_id = result.root_record_id
        entry.latest_record_id = result.record_id
        entry.written_this_session = True
        entry.flushed_key = key
        entry.last_saved_unit_count = snapshot.unit_count
        entry.remote_unit_count = max(entry.remote_unit_count, snapshot.unit_count)

        stored = result.snapshot
        if entry.snapshot.content_key() == key:
            entry.snapshot = stored
            entry.save_status = SAVED
        else:
            # Mutated while the write was in flight
            entry.snapshot = entry.snapshot.with_timestamps(stored.created_at, stored.updated_at)
            entry.save_status = NOT_SAVED
        return result

    def _schedule_flush(self, logical_id: Optional[str]) -> None:
        """Fire-and-forget flush of an entity with unsaved changes."""
        if logical_id is None:
            return
        entry = self._entries.get(logical_id)
        if entry is None or not entry.dirty:
            return
        task = asyncio.create_task(self._background_flush(logical_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_flush(self, logical_id: str) -> None:
        try:
            await self.flush(logical_id)
        except ChatLedgerError as e:
            # Status of the entry already shows the failure
            logger.warning("Background save of %s %s failed: %s", self._kind.name, logical_id, e)

    async def on_turn_complete(self, logical_id: str) -> Optional[WriteResult]:
        """
        Auto-save hook, called once after every assistant turn.

        Flushes only when the last message is a non-empty assistant
        message and there are more messages than at the last save.
        """
        entry = self._entries.get(logical_id)
        if entry is None:
            return None
        snapshot = entry.snapshot
        messages = getattr(snapshot, "messages", ())
        if not messages:
            return None
        last = messages[-1]
        if last.role != ROLE_ASSISTANT or not last.content.strip():
            return None
        if snapshot.unit_count <= entry.last_saved_unit_count:
            return None
        return await self.flush(logical_id)

    async def mark_deleted(self, logical_id: str) -> Optional[WriteResult]:
        """
        Delete an entity: gone locally at once, then a tombstone is written.

        The entity stays deleted for the rest of the session even if the
        tombstone write fails; the error is raised to the caller.

        Returns:
            The tombstone's WriteResult, or None for an entity that was
            never stored
        """
        user = self._require_user()
        entry = self._entries.pop(logical_id, None)
        if entry is None:
            if logical_id in self._tombstones:
                return None
            raise EntityNotFound(f"{self._kind.name} {logical_id} not found")
        self._tombstones.add(logical_id)
        if self._active_id == logical_id:
            self._active_id = None

        # A running flush must land before the tombstone
        await entry.idle.wait()
        if entry.root_record_id is None and not entry.written_this_session:
            logger.debug("%s %s was never stored, no tombstone needed", self._kind.name, logical_id)
            return None

        try:
            return await self._writer.write(
                self._kind, logical_id, user, entry.snapshot,
                is_deletion=True,
                root_hint=entry.root_record_id,
            )
        except ChatLedgerError as e:
            logger.warning("Deleting %s %s remotely failed: %s", self._kind.name, logical_id, e)
            raise

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def refresh(self) -> list:
        """
        Reload from the store and merge.

        Entries with unsaved content, or newer than the remote copy, are
        kept. Entities deleted in this session stay hidden.

        Returns:
            ``entities()`` after the merge
        """
        user = self._require_user()
        remote = await self._resolver.load(self._kind, user)
        for entity in remote:
            if entity.logical_id in self._tombstones:
                continue
            self._merge(entity)
        logger.debug("Refreshed %d %s(s) from store", len(remote), self._kind.name)
        return self.entities()

    def _merge(self, remote: LogicalEntity) -> None:
        entry = self._entries.get(remote.logical_id)
        if entry is None:
            self._adopt(remote)
            return

        snapshot = remote.snapshot
        entry.remote_unit_count = snapshot.unit_count
        if entry.root_record_id is None:
            entry.root_record_id = remote.root_record_id
        if entry.dirty or entry.flushing:
            return
        local_time = entry.snapshot.updated_at or _EPOCH
        remote_time = snapshot.updated_at or _EPOCH
        if local_time > remote_time:
            # Index has not caught up with our own write
            return
        self._adopt(remote)
