"""
Local record store using SQLite.

An append-only record log that serves as both the record store and its
tag index for the ``local`` backend. Records are never updated or
deleted; the only write is an INSERT.

The remote store indexes writes with a delay. ``index_delay`` reproduces
that here: a record becomes visible to ``query`` and to mutable-reference
resolution only ``index_delay`` seconds after it was written. ``fetch``
by id is immediate, as on the gateway.
"""

import json
import logging
import secrets
import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from .errors import StorageUnavailable
from .protocol import Identity, TagFilter
from .types import TAG_ROOT_TX, Record, Tag, WriteReceipt

logger = logging.getLogger(__name__)


class LocalRecordStore:
    """
    SQLite-backed append-only record log with tag queries.

    Implements both RecordStoreProtocol and RecordIndexProtocol.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        identity: Optional[Identity] = None,
        index_delay: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            identity: Owner recorded on every write (the writer address)
            index_delay: Seconds before a write becomes queryable
            clock: Time source in epoch seconds (injectable for tests)
        """
        self._db_path = db_path
        self._identity = identity
        self._index_delay = index_delay
        self._clock = clock
        self._last_ts = 0
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                owner TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                visible_at REAL NOT NULL,
                root_tx TEXT,
                tags_json TEXT NOT NULL,
                payload BLOB NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS record_tags (
                record_id TEXT NOT NULL,
                name TEXT NOT NULL,
                value TEXT NOT NULL
            )
        """)

        # Index for tag predicates
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_record_tags_name_value
            ON record_tags(name, value)
        """)

        # Index for mutable-reference resolution
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_root
            ON records(root_tx, timestamp)
        """)

        self._conn.commit()

        row = self._conn.execute("SELECT MAX(timestamp) FROM records").fetchone()
        self._last_ts = row[0] or 0

    def _next_timestamp(self) -> int:
        """Store timestamp in ms, strictly increasing within this log."""
        now_ms = int(self._clock() * 1000)
        ts = max(now_ms, self._last_ts + 1)
        self._last_ts = ts
        return ts

    def _row_to_record(self, row, with_payload: bool = False) -> Record:
        return Record(
            id=row["id"],
            tags=tuple(Tag(n, v) for n, v in json.loads(row["tags_json"])),
            timestamp=row["timestamp"],
            owner=row["owner"],
            payload=bytes(row["payload"]) if with_payload else None,
        )

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    async def write(self, payload: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        """
        Append a record.

        Returns:
            WriteReceipt with the new record id and store timestamp
        """
        if self._conn is None:
            raise StorageUnavailable("Record store is closed")

        record_id = secrets.token_urlsafe(32)
        timestamp = self._next_timestamp()
        visible_at = self._clock() + self._index_delay
        owner = self._identity.address if self._identity else ""
        tags = [Tag(*t) for t in tags]
        root_tx = next((t.value for t in tags if t.name == TAG_ROOT_TX), None)

        try:
            with self._conn:
                self._conn.execute("""
                    INSERT INTO records
                    (id, owner, timestamp, visible_at, root_tx, tags_json, payload)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    record_id, owner, timestamp, visible_at, root_tx,
                    json.dumps([list(t) for t in tags], ensure_ascii=False),
                    payload,
                ))
                self._conn.executemany("""
                    INSERT INTO record_tags (record_id, name, value)
                    VALUES (?, ?, ?)
                """, [(record_id, t.name, t.value) for t in tags])
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Local write failed: {e}") from e

        logger.debug("Wrote record %s (%d bytes, ts=%d)", record_id, len(payload), timestamp)
        return WriteReceipt(id=record_id, timestamp=timestamp)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def fetch(self, record_id: str) -> bytes:
        """Payload of a record by id. Raises StorageUnavailable if unknown."""
        record = self.get(record_id)
        if record is None:
            raise StorageUnavailable(f"Record not found: {record_id}")
        return record.payload

    def get(self, record_id: str) -> Optional[Record]:
        """Full record (with payload) by id, regardless of index visibility."""
        if self._conn is None:
            raise StorageUnavailable("Record store is closed")
        row = self._conn.execute("""
            SELECT id, owner, timestamp, tags_json, payload
            FROM records WHERE id = ?
        """, (record_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_record(row, with_payload=True)

    async def fetch_latest_via_root(self, root_record_id: str) -> Optional[bytes]:
        """
        Resolve a mutable reference: newest visible record on this root.

        Returns None when the root is unknown or not yet indexed.
        """
        if self._conn is None:
            raise StorageUnavailable("Record store is closed")
        row = self._conn.execute("""
            SELECT payload FROM records
            WHERE (id = ? OR root_tx = ?) AND visible_at <= ?
            ORDER BY timestamp DESC, seq DESC
            LIMIT 1
        """, (root_record_id, root_record_id, self._clock())).fetchone()
        if row is None:
            return None
        return bytes(row["payload"])

    def mutable_url(self, root_record_id: str) -> str:
        return f"local://mutable/{root_record_id}"

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    async def query(
        self,
        tags: Sequence[TagFilter],
        *,
        owners: Optional[Sequence[str]] = None,
        order: str = "DESC",
        limit: int = 100,
    ) -> list[Record]:
        """
        Find visible records matching every tag predicate.

        Args:
            tags: All predicates must match (each allows a set of values)
            owners: Restrict to records written by these addresses
            order: "DESC" (newest first) or "ASC"
            limit: Maximum records returned

        Returns:
            Records with tags and timestamp (no payload)
        """
        if self._conn is None:
            raise StorageUnavailable("Record store is closed")
        direction = "ASC" if order.upper() == "ASC" else "DESC"

        clauses = ["visible_at <= ?"]
        params: list = [self._clock()]
        for f in tags:
            placeholders = ",".join("?" * len(f.values))
            clauses.append(f"""
                id IN (SELECT record_id FROM record_tags
                       WHERE name = ? AND value IN ({placeholders}))
            """)
            params.extend([f.name, *f.values])
        if owners:
            placeholders = ",".join("?" * len(owners))
            clauses.append(f"owner IN ({placeholders})")
            params.extend(owners)
        params.append(limit)

        cursor = self._conn.execute(f"""
            SELECT id, owner, timestamp, tags_json
            FROM records
            WHERE {' AND '.join(clauses)}
            ORDER BY timestamp {direction}, seq {direction}
            LIMIT ?
        """, params)
        return [self._row_to_record(row) for row in cursor]

    def count(self) -> int:
        """Total records written (visible or not)."""
        return self._conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        self.close_sync()

    def close_sync(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __del__(self):
        self.close_sync()
