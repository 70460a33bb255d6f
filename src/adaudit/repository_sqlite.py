# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SQLite-backed vendor aggregate store.

Uses ``aiosqlite`` with a single long-lived connection in WAL mode.
Schema versioned via ``PRAGMA user_version``.  ``replace_for_scan`` runs
its delete and inserts in one transaction so readers never observe a
half-replaced scan.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from pathlib import Path

import aiosqlite

from .aggregator import VendorAggregate
from .errors import AdAuditError
from .repository import DEFAULT_SORT, VerdictRecord, require_scan_ids, resolve_sort

logger = logging.getLogger("adaudit.repository_sqlite")

_SCHEMA_VERSION = 1

_COLUMNS = (
    "vendor_host",
    "ad_slot_id",
    "impressions",
    "unique_event_fingerprints",
    "duplicate_event_count",
    "duplication_rate",
    "max_impressions_per_second",
    "median_inter_event_ms",
    "burst_events_1s",
    "first_seen_ts",
    "last_seen_ts",
    "stacking_suspected",
    "brand_guess",
    "brand_confidence",
    "brand_method",
)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_CREATE_AGGREGATES = """
CREATE TABLE IF NOT EXISTS affected_ad_vendors_hosts (
    id                         INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id                    TEXT NOT NULL,
    publisher_id               TEXT NOT NULL,
    vendor_host                TEXT NOT NULL,
    ad_slot_id                 TEXT NOT NULL,
    impressions                INTEGER NOT NULL DEFAULT 0,
    unique_event_fingerprints  INTEGER NOT NULL DEFAULT 0,
    duplicate_event_count      INTEGER NOT NULL DEFAULT 0,
    duplication_rate           REAL NOT NULL DEFAULT 0,
    max_impressions_per_second INTEGER NOT NULL DEFAULT 0,
    median_inter_event_ms      REAL,
    burst_events_1s            INTEGER NOT NULL DEFAULT 0,
    first_seen_ts              TEXT,
    last_seen_ts               TEXT,
    stacking_suspected         INTEGER NOT NULL DEFAULT 0,
    brand_guess                TEXT,
    brand_confidence           REAL,
    brand_method               TEXT NOT NULL DEFAULT 'none',
    UNIQUE(scan_id, publisher_id, vendor_host, ad_slot_id)
)
"""

_CREATE_VERDICTS = """
CREATE TABLE IF NOT EXISTS scan_verdicts (
    scan_id      TEXT NOT NULL,
    publisher_id TEXT NOT NULL,
    status       TEXT NOT NULL,
    rationale    TEXT NOT NULL DEFAULT '',
    score        INTEGER NOT NULL DEFAULT 0,
    recorded_at  REAL NOT NULL,
    PRIMARY KEY (scan_id, publisher_id)
)
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_affected_scan_pub ON affected_ad_vendors_hosts(scan_id, publisher_id)",
    "CREATE INDEX IF NOT EXISTS idx_affected_impressions ON affected_ad_vendors_hosts(impressions DESC)",
]


def _aggregate_to_row(scan_id: str, publisher_id: str, a: VendorAggregate) -> tuple:
    return (
        scan_id,
        publisher_id,
        a.vendor_host,
        a.ad_slot_id,
        a.impressions,
        a.unique_fingerprints,
        a.duplicate_count,
        a.duplication_rate,
        a.max_per_second,
        a.median_inter_event_ms,
        a.burst_events_1s,
        a.first_seen,
        a.last_seen,
        int(a.stacking_suspected),
        a.brand_guess,
        a.brand_confidence,
        a.brand_method,
    )


def _row_to_aggregate(row: aiosqlite.Row) -> VendorAggregate:
    return VendorAggregate(
        vendor_host=row[0],
        ad_slot_id=row[1],
        impressions=row[2],
        unique_fingerprints=row[3],
        duplicate_count=row[4],
        duplication_rate=row[5],
        max_per_second=row[6],
        median_inter_event_ms=row[7],
        burst_events_1s=row[8],
        first_seen=row[9],
        last_seen=row[10],
        stacking_suspected=bool(row[11]),
        brand_guess=row[12],
        brand_confidence=row[13],
        brand_method=row[14],
    )


# ---------------------------------------------------------------------------
# SqliteRepository
# ---------------------------------------------------------------------------


class SqliteRepository:
    """SQLite implementation of ``VendorAggregateRepository``.

    Use the ``create()`` async classmethod factory.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    @classmethod
    async def create(cls, db_path: str | Path) -> SqliteRepository:
        """Open (or create) a database and initialise the schema.

        Resolves ``~`` and creates parent directories.

        Raises:
            AdAuditError: If the existing database has a newer schema version.
        """
        path = Path(db_path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(str(path))
        try:
            await db.execute("PRAGMA journal_mode = WAL")

            cursor = await db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > _SCHEMA_VERSION:
                raise AdAuditError(
                    f"Database schema version {current_version} is newer than supported version {_SCHEMA_VERSION}"
                )

            if current_version < _SCHEMA_VERSION:
                await db.execute(_CREATE_AGGREGATES)
                await db.execute(_CREATE_VERDICTS)
                for idx_sql in _CREATE_INDEXES:
                    await db.execute(idx_sql)
                await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
                await db.commit()
        except BaseException:
            await db.close()
            raise

        logger.debug("opened aggregate store at %s", path)
        return cls(db)

    async def replace_for_scan(self, scan_id: str, publisher_id: str, rows: list[VendorAggregate]) -> None:
        """Delete the scan's rows and insert *rows* in a single transaction."""
        require_scan_ids(scan_id, publisher_id)
        placeholders = ", ".join("?" for _ in range(len(_COLUMNS) + 2))
        insert_sql = (
            f"INSERT OR REPLACE INTO affected_ad_vendors_hosts (scan_id, publisher_id, {', '.join(_COLUMNS)}) "
            f"VALUES ({placeholders})"
        )
        try:
            await self._db.execute(
                "DELETE FROM affected_ad_vendors_hosts WHERE scan_id = ? AND publisher_id = ?",
                (scan_id, publisher_id),
            )
            await self._db.executemany(insert_sql, [_aggregate_to_row(scan_id, publisher_id, r) for r in rows])
            await self._db.commit()
        except BaseException:
            await self._db.rollback()
            raise
        logger.info("stored %d vendor aggregates for scan %s", len(rows), scan_id)

    async def list_for_scan(
        self,
        scan_id: str,
        publisher_id: str,
        sort_by: str = DEFAULT_SORT,
        direction: str = "DESC",
    ) -> list[VendorAggregate]:
        """Rows with at least one impression, ordered by a whitelisted column."""
        column, descending = resolve_sort(sort_by, direction)
        order = "DESC" if descending else "ASC"
        cursor = await self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM affected_ad_vendors_hosts "
            f"WHERE scan_id = ? AND publisher_id = ? AND impressions > 0 "
            f"ORDER BY {column} {order}, id ASC",
            (scan_id, publisher_id),
        )
        rows = await cursor.fetchall()
        return [_row_to_aggregate(r) for r in rows]

    async def record_verdict(self, scan_id: str, publisher_id: str, verdict: VerdictRecord) -> None:
        require_scan_ids(scan_id, publisher_id)
        await self._db.execute(
            "INSERT OR REPLACE INTO scan_verdicts (scan_id, publisher_id, status, rationale, score, recorded_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (scan_id, publisher_id, verdict.status, verdict.rationale, verdict.score, verdict.recorded_at),
        )
        await self._db.commit()

    async def get_verdict(self, scan_id: str, publisher_id: str) -> VerdictRecord | None:
        cursor = await self._db.execute(
            "SELECT status, rationale, score, recorded_at FROM scan_verdicts WHERE scan_id = ? AND publisher_id = ?",
            (scan_id, publisher_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return VerdictRecord(status=row[0], rationale=row[1], score=row[2], recorded_at=row[3])

    async def close(self) -> None:
        """Close the database connection. Idempotent."""
        with suppress(Exception):
            await self._db.close()
