# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Scan summary, per-creative viewability flags and delivery reconciliation.

Everything here reads the final deduplicated ``sequences`` list plus the
scan's ``SlotTimelineTracker``; nothing mutates them.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass

from . import ClassifiedEvent, EventCategory
from .config import DEFAULT_DISCREPANCY_THRESHOLD
from .correlation import SlotTimelineTracker
from .stacking import StackingFindings

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def _pct(value: float) -> float:
    return round(value, 2)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Diagnostic:
    tag_library_loads: int = 0
    id_sync_count: int = 0
    ad_requests: int = 0
    gam_ad_requests: int = 0
    unattributed_beacons: int = 0
    total_events: int = 0
    suspect_clicks: int = 0

    def to_dict(self) -> dict:
        return {
            "tagLibraryLoads": self.tag_library_loads,
            "idSyncCount": self.id_sync_count,
            "adRequests": self.ad_requests,
            "gamAdRequests": self.gam_ad_requests,
            "unattributedBeacons": self.unattributed_beacons,
            "totalEvents": self.total_events,
            "suspectClicks": self.suspect_clicks,
        }


@dataclass(frozen=True, slots=True)
class ScanSummary:
    total_impressions: int
    served_impressions: int
    verified_impressions: int
    viewable_impressions: int
    clicks: int
    discrepancy_percent: float | None
    sequences_count: int
    flags_count: int
    diagnostic: Diagnostic
    stacking: StackingFindings

    def to_dict(self) -> dict:
        return {
            "totalImpressions": self.total_impressions,
            "servedImpressions": self.served_impressions,
            "verifiedImpressions": self.verified_impressions,
            "viewableImpressions": self.viewable_impressions,
            "clicks": self.clicks,
            "discrepancyPercent": self.discrepancy_percent,
            "sequencesCount": self.sequences_count,
            "flagsCount": self.flags_count,
            "diagnostic": self.diagnostic.to_dict(),
            "adStackingFindings": {
                "stackedPairsCount": self.stacking.stacked_pairs_count,
                "hiddenIframesCount": self.stacking.hidden_iframes_count,
                "tinyIframesCount": self.stacking.tiny_iframes_count,
                "offscreenIframesCount": self.stacking.offscreen_iframes_count,
                "findingsCount": len(self.stacking.findings),
            },
        }


def _of(sequences: Sequence[ClassifiedEvent], category: EventCategory) -> list[ClassifiedEvent]:
    return [e for e in sequences if e.category == category]


def served_renders(sequences: Sequence[ClassifiedEvent]) -> list[ClassifiedEvent]:
    return [e for e in _of(sequences, EventCategory.GPT_SLOT_RENDER) if not e.is_empty]


def discrepancy_percent(total: int, viewable: int) -> float | None:
    """``(total - viewable) / total * 100`` to 2 dp; ``None`` without viewability data."""
    if total > 0 and viewable > 0:
        return _pct((total - viewable) / total * 100)
    return None


def build_summary(
    sequences: Sequence[ClassifiedEvent],
    tracker: SlotTimelineTracker,
    stacking: StackingFindings,
    *,
    flags_count: int = 0,
) -> ScanSummary:
    served = len(served_renders(sequences))
    gam_requests = _of(sequences, EventCategory.GAM_AD_REQUEST)
    beacons = _of(sequences, EventCategory.IMPRESSION_BEACON)

    gam_correlated = sum(1 for g in gam_requests if tracker.can_correlate_gam_request(g))
    mapped_beacons = sum(1 for b in beacons if tracker.can_map_to_slot_render(b))
    viewable = len(_of(sequences, EventCategory.GPT_VIEWABLE))
    total = served + mapped_beacons

    return ScanSummary(
        total_impressions=total,
        served_impressions=served,
        verified_impressions=served + gam_correlated + mapped_beacons,
        viewable_impressions=viewable,
        clicks=len(_of(sequences, EventCategory.CLICK_REDIRECT)),
        discrepancy_percent=discrepancy_percent(total, viewable),
        sequences_count=len(sequences),
        flags_count=flags_count,
        diagnostic=Diagnostic(
            tag_library_loads=len(_of(sequences, EventCategory.TAG_LIBRARY)),
            id_sync_count=len(_of(sequences, EventCategory.ID_SYNC)),
            ad_requests=len(_of(sequences, EventCategory.AD_REQUEST)),
            gam_ad_requests=len(gam_requests),
            unattributed_beacons=len(beacons) - mapped_beacons,
            total_events=len(sequences),
            suspect_clicks=len(_of(sequences, EventCategory.SUSPECT_CLICK)),
        ),
        stacking=stacking,
    )


# ---------------------------------------------------------------------------
# Per-creative flags
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CreativeFlag:
    creative_id: str | None
    placement: str | None
    impressions: int
    viewable: int
    clicks: int
    discrepancy: float

    @property
    def message(self) -> str:
        return f"Viewability gap: {round(self.discrepancy)}% ({self.viewable}/{self.impressions} verified)"

    def to_dict(self) -> dict:
        return {
            "creativeId": self.creative_id,
            "placement": self.placement,
            "impressions": self.impressions,
            "viewable": self.viewable,
            "clicks": self.clicks,
            "discrepancy": self.discrepancy,
            "message": self.message,
        }


def creative_key(event: ClassifiedEvent) -> str | None:
    """GPT events fall back to their slot id when no creative id was reported."""
    if event.category in (EventCategory.GPT_SLOT_RENDER, EventCategory.GPT_VIEWABLE):
        return event.creative_id or event.slot_id
    return event.creative_id


def build_flags(
    sequences: Sequence[ClassifiedEvent],
    threshold: float = DEFAULT_DISCREPANCY_THRESHOLD,
) -> list[CreativeFlag]:
    """Creatives whose viewability gap exceeds *threshold* percent."""
    stats: dict[str | None, dict] = {}
    for event in [*_of(sequences, EventCategory.IMPRESSION_BEACON), *served_renders(sequences)]:
        entry = stats.setdefault(
            creative_key(event),
            {"placement": event.placement, "impressions": 0, "viewable": 0, "clicks": 0},
        )
        entry["impressions"] += 1
    for event in _of(sequences, EventCategory.GPT_VIEWABLE):
        if (key := creative_key(event)) in stats:
            stats[key]["viewable"] += 1
    for event in _of(sequences, EventCategory.CLICK_REDIRECT):
        if (key := creative_key(event)) in stats:
            stats[key]["clicks"] += 1

    flags: list[CreativeFlag] = []
    for key, s in stats.items():
        if s["impressions"] <= 0 or s["viewable"] <= 0:
            continue
        gap = (s["impressions"] - s["viewable"]) / s["impressions"] * 100
        if gap > threshold:
            flags.append(
                CreativeFlag(
                    creative_id=key,
                    placement=s["placement"],
                    impressions=s["impressions"],
                    viewable=s["viewable"],
                    clicks=s["clicks"],
                    discrepancy=_pct(gap),
                )
            )
    return flags


# ---------------------------------------------------------------------------
# Delivery reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeliveryTotals:
    adserver_imps: int = 0
    dsp_imps: int = 0
    clicks: int = 0

    def to_dict(self) -> dict:
        return {"adserverImps": self.adserver_imps, "dspImps": self.dsp_imps, "clicks": self.clicks}


def _int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        m = _LEADING_INT.match(value)
        return int(m.group(1)) if m else 0
    return 0


def parse_delivery_totals(text: str | None) -> DeliveryTotals | None:
    """Parse ad-server/DSP delivery totals from JSON or a header+row CSV.

    Returns ``None`` when *text* is empty or neither format applies.
    """
    if not text or not isinstance(text, str):
        return None
    trimmed = text.strip()
    try:
        data = json.loads(trimmed)
    except ValueError:
        data = None
    if isinstance(data, dict):
        return DeliveryTotals(
            adserver_imps=_int(data.get("adserverImps") or data.get("adserver_imps") or 0),
            dsp_imps=_int(data.get("dspImps") or data.get("dsp_imps") or 0),
            clicks=_int(data.get("clicks") or 0),
        )

    lines = trimmed.splitlines()
    if len(lines) < 2:
        return None
    header = [h.strip() for h in lines[0].lower().split(",")]
    values = lines[1].split(",")

    def column(token: str) -> int:
        idx = next((i for i, h in enumerate(header) if token in h), -1)
        return _int(values[idx]) if 0 <= idx < len(values) else 0

    return DeliveryTotals(adserver_imps=column("adserver"), dsp_imps=column("dsp"), clicks=column("click"))


@dataclass(frozen=True, slots=True)
class Reconciliation:
    verified_viewability_rate: float | None
    discrepancy_vs_adserver: float | None
    discrepancy_vs_dsp: float | None
    detected_impressions: int
    adserver_impressions: int
    dsp_impressions: int
    detected_clicks: int
    reported_clicks: int

    def to_dict(self) -> dict:
        return {
            "verifiedViewabilityRate": self.verified_viewability_rate,
            "discrepancyVsAdserver": self.discrepancy_vs_adserver,
            "discrepancyVsDSP": self.discrepancy_vs_dsp,
            "detectedImpressions": self.detected_impressions,
            "adserverImpressions": self.adserver_impressions,
            "dspImpressions": self.dsp_impressions,
            "detectedClicks": self.detected_clicks,
            "reportedClicks": self.reported_clicks,
        }


def reconcile(delivery: DeliveryTotals, summary: ScanSummary) -> Reconciliation:
    total, viewable = summary.total_impressions, summary.viewable_impressions
    rate = _pct(viewable / total * 100) if total > 0 and viewable > 0 else None
    vs_adserver = (
        _pct((delivery.adserver_imps - total) / delivery.adserver_imps * 100) if delivery.adserver_imps > 0 else None
    )
    vs_dsp = _pct((delivery.dsp_imps - total) / delivery.dsp_imps * 100) if delivery.dsp_imps > 0 else None
    return Reconciliation(
        verified_viewability_rate=rate,
        discrepancy_vs_adserver=vs_adserver,
        discrepancy_vs_dsp=vs_dsp,
        detected_impressions=total,
        adserver_impressions=delivery.adserver_imps,
        dsp_impressions=delivery.dsp_imps,
        detected_clicks=summary.clicks,
        reported_clicks=delivery.clicks,
    )
