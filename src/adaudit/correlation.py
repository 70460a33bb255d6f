# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Slot timeline tracker: GAM requests and beacons against GPT slot renders.

Two strategies, deliberately kept apart:

- GAM ad requests correlate by time: a non-empty render of the same slot
  must land within ``[0, window]`` ms *after* the request.
- Impression beacons correlate by identity: any non-empty render anywhere
  on the page sharing the beacon's creative or line-item id.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from . import ClassifiedEvent
from .config import DEFAULT_CORRELATION_WINDOW_MS

UNKNOWN_SLOT = "unknown"

_SLOT_PARAMS = ("slot", "slot_id", "adslot")


@dataclass(frozen=True, slots=True)
class SlotRenderRecord:
    ts: float
    slot_id: str | None
    ad_unit_path: str | None
    creative_id: str | None
    line_item_id: str | None
    is_empty: bool


@dataclass(frozen=True, slots=True)
class GamRequestRecord:
    ts: float
    url: str
    slot_id: str


def extract_slot_from_url(url: str | None) -> str | None:
    """First non-empty ``slot`` / ``slot_id`` / ``adslot`` query value."""
    if not url:
        return None
    try:
        query = parse_qs(urlsplit(url).query)
    except ValueError:
        return None
    for name in _SLOT_PARAMS:
        values = query.get(name)
        if values and values[0]:
            return values[0]
    return None


def gam_slot_key(event: ClassifiedEvent) -> str:
    return event.slot_id or extract_slot_from_url(event.request_url) or event.ad_unit_path or UNKNOWN_SLOT


def render_slot_key(event: ClassifiedEvent | SlotRenderRecord) -> str:
    return event.slot_id or event.ad_unit_path or UNKNOWN_SLOT


class SlotTimelineTracker:
    """Append-only per-slot timelines for one scan."""

    def __init__(self, *, correlation_window_ms: float = DEFAULT_CORRELATION_WINDOW_MS) -> None:
        self.correlation_window_ms = correlation_window_ms
        self._renders: defaultdict[str, list[SlotRenderRecord]] = defaultdict(list)
        self._gam_requests: defaultdict[str, list[GamRequestRecord]] = defaultdict(list)
        self._lock = threading.Lock()

    def record_slot_render(self, event: ClassifiedEvent) -> SlotRenderRecord:
        record = SlotRenderRecord(
            ts=event.ts,
            slot_id=event.slot_id,
            ad_unit_path=event.ad_unit_path,
            creative_id=event.creative_id,
            line_item_id=event.line_item_id,
            is_empty=event.is_empty,
        )
        with self._lock:
            self._renders[render_slot_key(record)].append(record)
        return record

    def record_gam_request(self, event: ClassifiedEvent) -> GamRequestRecord:
        record = GamRequestRecord(ts=event.ts, url=event.request_url, slot_id=gam_slot_key(event))
        with self._lock:
            self._gam_requests[record.slot_id].append(record)
        return record

    def can_correlate_gam_request(self, request: ClassifiedEvent) -> bool:
        """True iff a non-empty render of the same slot follows within the window."""
        key = gam_slot_key(request)
        with self._lock:
            renders = list(self._renders.get(key, ()))
        return any(
            not r.is_empty and 0 <= r.ts - request.ts <= self.correlation_window_ms for r in renders
        )

    def can_map_to_slot_render(self, beacon: ClassifiedEvent) -> bool:
        """True iff any non-empty render shares the beacon's creative or line-item id."""
        creative, line_item = beacon.creative_id, beacon.line_item_id
        if not creative and not line_item:
            return False
        with self._lock:
            renders = [r for records in self._renders.values() for r in records]
        return any(
            not r.is_empty
            and ((creative and r.creative_id == creative) or (line_item and r.line_item_id == line_item))
            for r in renders
        )

    def renders(self) -> list[SlotRenderRecord]:
        with self._lock:
            return sorted((r for records in self._renders.values() for r in records), key=lambda r: r.ts)

    def gam_requests(self) -> list[GamRequestRecord]:
        with self._lock:
            return sorted((r for records in self._gam_requests.values() for r in records), key=lambda r: r.ts)
