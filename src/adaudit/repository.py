# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Vendor aggregate persistence contract.

Aggregates are keyed uniquely by ``(scan_id, publisher_id, vendor_host,
ad_slot_id)`` and replaced wholesale per scan (delete-then-insert), never
patched row by row.  ``VendorAggregateRepository`` is the runtime-checkable
protocol; ``InMemoryRepository`` backs tests and one-shot CLI runs,
``repository_sqlite.SqliteRepository`` the persistent store.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .aggregator import VendorAggregate
from .errors import EvidenceContractError

# Columns a caller may sort listings by; anything else falls back to impressions
SORTABLE_COLUMNS: dict[str, str] = {
    "impressions": "impressions",
    "duplication_rate": "duplication_rate",
    "max_impressions_per_second": "max_per_second",
    "first_seen_ts": "first_seen",
    "last_seen_ts": "last_seen",
}
DEFAULT_SORT = "impressions"


@dataclass(frozen=True, slots=True)
class VerdictRecord:
    """Rule-engine verdict stored alongside a scan's aggregates."""

    status: str
    rationale: str = ""
    score: int = 0
    recorded_at: float = field(default_factory=time.time)


def resolve_sort(sort_by: str, direction: str) -> tuple[str, bool]:
    """Whitelisted sort column and ``descending`` flag."""
    column = sort_by if sort_by in SORTABLE_COLUMNS else DEFAULT_SORT
    return column, str(direction).upper() != "ASC"


def require_scan_ids(scan_id: str, publisher_id: str) -> None:
    if not scan_id:
        raise EvidenceContractError("scan_id is required", field="scanId")
    if not publisher_id:
        raise EvidenceContractError("publisher_id is required", field="publisherId")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class VendorAggregateRepository(Protocol):
    """Interface for aggregate storage: in-memory or SQLite."""

    async def replace_for_scan(self, scan_id: str, publisher_id: str, rows: list[VendorAggregate]) -> None: ...

    async def list_for_scan(
        self,
        scan_id: str,
        publisher_id: str,
        sort_by: str = DEFAULT_SORT,
        direction: str = "DESC",
    ) -> list[VendorAggregate]: ...

    async def record_verdict(self, scan_id: str, publisher_id: str, verdict: VerdictRecord) -> None: ...

    async def get_verdict(self, scan_id: str, publisher_id: str) -> VerdictRecord | None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryRepository:
    """Dict-backed repository. Not shared across processes."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], dict[tuple[str, str], VendorAggregate]] = {}
        self._verdicts: dict[tuple[str, str], VerdictRecord] = {}

    async def replace_for_scan(self, scan_id: str, publisher_id: str, rows: list[VendorAggregate]) -> None:
        """Drop the scan's rows, then insert *rows* (last one wins per vendor/slot)."""
        require_scan_ids(scan_id, publisher_id)
        self._rows[(scan_id, publisher_id)] = {(r.vendor_host, r.ad_slot_id): r for r in rows}

    async def list_for_scan(
        self,
        scan_id: str,
        publisher_id: str,
        sort_by: str = DEFAULT_SORT,
        direction: str = "DESC",
    ) -> list[VendorAggregate]:
        """Rows with at least one impression, sorted by a whitelisted column."""
        column, descending = resolve_sort(sort_by, direction)
        attr = SORTABLE_COLUMNS[column]
        rows = [r for r in self._rows.get((scan_id, publisher_id), {}).values() if r.impressions > 0]
        return sorted(rows, key=lambda r: getattr(r, attr), reverse=descending)

    async def record_verdict(self, scan_id: str, publisher_id: str, verdict: VerdictRecord) -> None:
        require_scan_ids(scan_id, publisher_id)
        self._verdicts[(scan_id, publisher_id)] = verdict

    async def get_verdict(self, scan_id: str, publisher_id: str) -> VerdictRecord | None:
        return self._verdicts.get((scan_id, publisher_id))

    async def close(self) -> None:
        """No-op for in-memory repository."""
