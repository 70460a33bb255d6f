# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per (vendor host, ad slot) impression statistics.

``aggregate`` is a pure fold over one scan's raw (pre-dedupe) ad events:
the same input list always produces the same ``VendorAggregate`` list, in
first-seen group order.  Duplicates must be present in the input; they are
what the duplication and burst metrics measure.
"""

from __future__ import annotations

import hashlib
import math
import statistics
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from . import ClassifiedEvent, EventCategory
from .dedupe import strip_cache_busters
from .errors import EvidenceContractError

AGGREGATED_CATEGORIES = frozenset(
    {EventCategory.IMPRESSION_BEACON, EventCategory.GAM_AD_REQUEST, EventCategory.AD_REQUEST}
)

BURST_WINDOW_MS = 1_000


@dataclass(frozen=True, slots=True)
class VendorAggregate:
    vendor_host: str
    ad_slot_id: str
    impressions: int
    unique_fingerprints: int
    duplicate_count: int
    duplication_rate: float
    max_per_second: int  # fixed 1 s buckets
    median_inter_event_ms: float | None
    burst_events_1s: int  # sliding 1 s window
    first_seen: str
    last_seen: str
    stacking_suspected: bool = False
    brand_guess: str | None = None
    brand_confidence: float | None = None
    brand_method: str = "none"

    def to_dict(self) -> dict:
        return {
            "vendorHost": self.vendor_host,
            "adSlotId": self.ad_slot_id,
            "impressions": self.impressions,
            "uniqueFingerprints": self.unique_fingerprints,
            "duplicateCount": self.duplicate_count,
            "duplicationRate": self.duplication_rate,
            "maxPerSecond": self.max_per_second,
            "medianInterEventMs": self.median_inter_event_ms,
            "burstEvents1s": self.burst_events_1s,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "stackingSuspected": self.stacking_suspected,
            "brandGuess": self.brand_guess,
            "brandConfidence": self.brand_confidence,
            "brandMethod": self.brand_method,
        }


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def derive_ad_slot_id(event: ClassifiedEvent) -> str:
    """First usable slot identifier, else ``slot-`` + a stable hash of host and URL."""
    candidates = (
        event.slot_id,
        event.ad_unit_path,
        event.placement,
        event.identifiers.placement,
        event.identifiers.creative_id,
        event.creative_id,
    )
    for candidate in candidates:
        if candidate and str(candidate).lower() != "unknown":
            return str(candidate)
    digest = hashlib.sha1(f"{event.hostname}|{event.request_url}".encode()).hexdigest()
    return f"slot-{digest[:12]}"


def fingerprint_event(event: ClassifiedEvent) -> str:
    return f"{event.hostname}|{derive_ad_slot_id(event)}|{strip_cache_busters(event.request_url)}"


def iso_ms(ts_ms: float) -> str:
    """Epoch milliseconds -> ``YYYY-MM-DDTHH:MM:SS.mmmZ``; empty when outside the datetime range."""
    try:
        dt = datetime.fromtimestamp(ts_ms / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return ""
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def max_per_bucket(timestamps: list[float], bucket_ms: int = BURST_WINDOW_MS) -> int:
    buckets: dict[int, int] = {}
    for ts in timestamps:
        b = math.floor(ts / bucket_ms)
        buckets[b] = buckets.get(b, 0) + 1
    return max(buckets.values(), default=0)


def sliding_burst(timestamps: list[float], window_ms: int = BURST_WINDOW_MS) -> int:
    """Most events inside any window of *window_ms* (inclusive), sorted input."""
    best = left = 0
    for right, ts in enumerate(timestamps):
        while ts - timestamps[left] > window_ms:
            left += 1
        best = max(best, right - left + 1)
    return best


def median_delta(timestamps: list[float]) -> float | None:
    deltas = [b - a for a, b in zip(timestamps, timestamps[1:], strict=False)]
    return statistics.median(deltas) if deltas else None


def _group_metrics(vendor_host: str, ad_slot_id: str, events: list[ClassifiedEvent], stacking: bool) -> VendorAggregate:
    timestamps = sorted(e.ts for e in events)
    impressions = len(events)
    unique = len({fingerprint_event(e) for e in events})
    duplicates = impressions - unique
    return VendorAggregate(
        vendor_host=vendor_host,
        ad_slot_id=ad_slot_id,
        impressions=impressions,
        unique_fingerprints=unique,
        duplicate_count=duplicates,
        duplication_rate=duplicates / impressions,
        max_per_second=max_per_bucket(timestamps),
        median_inter_event_ms=median_delta(timestamps),
        burst_events_1s=sliding_burst(timestamps),
        first_seen=iso_ms(timestamps[0]),
        last_seen=iso_ms(timestamps[-1]),
        stacking_suspected=stacking,
    )


def aggregate(
    events: Iterable[ClassifiedEvent],
    scan_id: str,
    publisher_id: str,
    *,
    stacking_suspected: bool = False,
) -> list[VendorAggregate]:
    """Group ad events by ``(vendor host, ad slot)`` and compute per-group statistics.

    Raises:
        EvidenceContractError: If *scan_id* or *publisher_id* is empty.
    """
    if not scan_id:
        raise EvidenceContractError("scan_id is required for vendor aggregation", field="scanId")
    if not publisher_id:
        raise EvidenceContractError("publisher_id is required for vendor aggregation", field="publisherId")

    groups: dict[tuple[str, str], list[ClassifiedEvent]] = {}
    for event in events:
        if event.category not in AGGREGATED_CATEGORIES:
            continue
        key = (event.hostname or "", derive_ad_slot_id(event))
        groups.setdefault(key, []).append(event)

    return [_group_metrics(host, slot, evs, stacking_suspected) for (host, slot), evs in groups.items()]


def build_evidence_payload(
    scan_id: str,
    publisher_id: str,
    rows: list[VendorAggregate],
    *,
    generated_at: datetime | None = None,
) -> dict:
    """Affected-vendors evidence document (ad-tech platforms, not brands)."""
    firsts = [r.first_seen for r in rows if r.first_seen]
    lasts = [r.last_seen for r in rows if r.last_seen]
    generated = (generated_at or datetime.now(UTC)).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {
        "evidence_type": "affected_ad_vendors_hosts",
        "semantics": "ad_tech_platforms_not_brands",
        "scan_id": scan_id,
        "publisher": {"id": publisher_id, "domain": publisher_id},
        "window": {"start_ts": min(firsts, default=None), "end_ts": max(lasts, default=None)},
        "summary": {
            "total_rows": len(rows),
            "total_impressions": sum(r.impressions for r in rows),
            "vendors": [
                {"vendor_host": r.vendor_host, "impressions": r.impressions, "duplication_rate": r.duplication_rate}
                for r in rows
            ],
        },
        "rows": [
            {
                "vendor_host": r.vendor_host,
                "ad_slot_id": r.ad_slot_id,
                "impressions": r.impressions,
                "duplication_rate": r.duplication_rate,
                "burst_events_1s": r.burst_events_1s,
                "max_impressions_per_second": r.max_per_second,
                "stacking_suspected": r.stacking_suspected,
                "brand_guess": r.brand_guess,
                "brand_confidence": r.brand_confidence,
                "brand_method": r.brand_method,
            }
            for r in rows
        ],
        "provenance": {
            "source": "confirmed_impression_events",
            "aggregation": "vendor_host + ad_slot_id",
            "generated_at": generated,
        },
    }
