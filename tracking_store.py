"""Database storage layer for tracking records."""
import json
import logging
from dataclasses import replace
from typing import List, Optional

import aiosqlite

from config import DATABASE_PATH
from errors import PersistenceConflict
from models import TrackingKind, TrackingRecord
from timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)


class TrackingStore:
    """
    Document store for tracking records.

    Each record is kept as a JSON document next to the columns needed for
    lookups. Writes use an optimistic version check: an update only succeeds
    if the row still carries the version the caller read.
    """

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path

    async def initialize(self):
        """Initialize the database with required tables and indexes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tracking_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    clan_tag TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    doc TEXT NOT NULL,
                    UNIQUE(clan_tag, kind, external_id)
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_tracking_active
                ON tracking_records (clan_tag, kind, is_active)
            """)
            # At most one active record per clan and kind
            await db.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_tracking_one_active
                ON tracking_records (clan_tag, kind) WHERE is_active = 1
            """)
            await db.commit()

    @staticmethod
    def _row_to_record(row) -> TrackingRecord:
        return TrackingRecord.from_doc(json.loads(row["doc"]), record_id=row["id"], version=row["version"])

    async def _fetch_one(self, query: str, params: tuple) -> Optional[TrackingRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
                return self._row_to_record(row) if row else None

    async def _fetch_all(self, query: str, params: tuple) -> List[TrackingRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_record(row) for row in rows]

    async def get_active(self, clan_tag: str, kind: TrackingKind) -> Optional[TrackingRecord]:
        """Get the active record for a clan and kind, if any."""
        return await self._fetch_one(
            "SELECT * FROM tracking_records WHERE clan_tag = ? AND kind = ? AND is_active = 1",
            (clan_tag, kind.value),
        )

    async def get_latest(self, clan_tag: str, kind: TrackingKind) -> Optional[TrackingRecord]:
        """Most recently created record for a clan and kind, active or not."""
        return await self._fetch_one(
            "SELECT * FROM tracking_records WHERE clan_tag = ? AND kind = ? ORDER BY id DESC LIMIT 1",
            (clan_tag, kind.value),
        )

    async def load_active(self, kind: Optional[TrackingKind] = None) -> List[TrackingRecord]:
        """All active records, optionally limited to one kind."""
        if kind is None:
            return await self._fetch_all("SELECT * FROM tracking_records WHERE is_active = 1", ())
        return await self._fetch_all(
            "SELECT * FROM tracking_records WHERE is_active = 1 AND kind = ?", (kind.value,)
        )

    async def history(self, clan_tag: str, kind: TrackingKind, limit: int = 10) -> List[TrackingRecord]:
        """Finished records for a clan, newest first."""
        return await self._fetch_all(
            "SELECT * FROM tracking_records WHERE clan_tag = ? AND kind = ? AND is_active = 0 "
            "ORDER BY id DESC LIMIT ?",
            (clan_tag, kind.value, limit),
        )

    async def save(self, record: TrackingRecord) -> TrackingRecord:
        """
        Insert a new record or update an existing one.

        Returns the stored copy with its id, version and timestamps set.
        Raises PersistenceConflict if the row changed since it was read, or if
        inserting would create a second active record for the clan and kind.
        """
        now = isoformat(utcnow())
        record = replace(record, created_at=record.created_at or now, updated_at=now)
        doc = json.dumps(record.to_doc())

        async with aiosqlite.connect(self.db_path) as db:
            if record.record_id is None:
                try:
                    cursor = await db.execute("""
                        INSERT INTO tracking_records
                            (clan_tag, kind, external_id, is_active, version, created_at, updated_at, doc)
                        VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                    """, (record.clan_tag, record.kind.value, record.external_id, int(record.is_active),
                          record.created_at, record.updated_at, doc))
                    await db.commit()
                except aiosqlite.IntegrityError as e:
                    raise PersistenceConflict(
                        f"cannot insert {record.kind.value} record {record.external_id}: {e}"
                    ) from e
                logger.debug("[STORE] Inserted %s record %s", record.kind.value, record.external_id)
                return replace(record, record_id=cursor.lastrowid, version=0)

            try:
                cursor = await db.execute("""
                    UPDATE tracking_records
                    SET external_id = ?, is_active = ?, version = version + 1, updated_at = ?, doc = ?
                    WHERE id = ? AND version = ?
                """, (record.external_id, int(record.is_active), record.updated_at, doc,
                      record.record_id, record.version))
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise PersistenceConflict(
                    f"cannot update {record.kind.value} record {record.external_id}: {e}"
                ) from e
            if cursor.rowcount == 0:
                raise PersistenceConflict(
                    f"{record.kind.value} record {record.external_id} changed since version {record.version}"
                )
            logger.debug("[STORE] Updated %s record %s to version %d",
                         record.kind.value, record.external_id, record.version + 1)
            return replace(record, version=record.version + 1)

    async def clear_clan(self, clan_tag: str):
        """Delete every record for a clan (used when a clan is removed)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM tracking_records WHERE clan_tag = ?", (clan_tag,))
            await db.commit()
