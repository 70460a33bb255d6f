# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""One scan's event pipeline: classify, dedupe, correlate, report.

``ScanSession`` owns the scan-scoped ledgers and tracker.  The browser
layer (or a capture replay) pushes requests, responses, navigations,
clicks, GPT callbacks and in-page viewability measurements into it as they
happen, from any thread; ``finalize`` then runs the stacking detector over
the iframe snapshots and builds the ``ScanReport``.

Pipeline per network event::

    classify ─► IMPRESSION_BEACON ─► impression ledger ─► sequences
            ├─► GAM_AD_REQUEST    ─► tracker            ─► sequences
            ├─► CLICK_REDIRECT    ─► click correlation  ─► sequences
            └─► other categories                        ─► sequences

Every classified network event (duplicates included) also lands in
``raw_events`` for the vendor aggregator.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from . import ClassifiedEvent, EventCategory, GptEvent, RawRequestEvent, UserClick, parse_timestamp
from .classifier import classify, classify_url
from .config import AuditConfig
from .correlation import GamRequestRecord, SlotRenderRecord, SlotTimelineTracker
from .dedupe import DedupeLedger, beacon_dedupe_key, gpt_render_key, gpt_viewable_key
from .logging_config import scan_context
from .stacking import DEFAULT_VIEWPORT, IframeGeometrySnapshot, StackingFindings, Viewport, detect, is_ad_candidate
from .summary import (
    CreativeFlag,
    DeliveryTotals,
    Reconciliation,
    ScanSummary,
    build_flags,
    build_summary,
    reconcile,
)

logger = logging.getLogger("adaudit.scan")

SUSPECT_CLICK_CONFIDENCE = 0.3
GPT_VENDOR = "Google"
IN_PAGE_VENDOR = "In-Page Measurement"


@dataclass(frozen=True, slots=True)
class ScanReport:
    """Everything a finished scan hands to reporting and the verdict path."""

    scan_id: str
    page_url: str
    sequences: tuple[ClassifiedEvent, ...]
    raw_events: tuple[ClassifiedEvent, ...]
    summary: ScanSummary
    flags: tuple[CreativeFlag, ...]
    stacking: StackingFindings
    iframes: tuple[IframeGeometrySnapshot, ...] = ()
    renders: tuple[SlotRenderRecord, ...] = ()
    gam_requests: tuple[GamRequestRecord, ...] = ()
    reconciliation: Reconciliation | None = None
    delivery: DeliveryTotals | None = None
    config: AuditConfig = field(default_factory=AuditConfig)

    def to_dict(self) -> dict:
        return {
            "scanId": self.scan_id,
            "url": self.page_url,
            "discrepancyThreshold": self.config.discrepancy_threshold,
            "summary": self.summary.to_dict(),
            "sequences": [e.to_dict() for e in self.sequences],
            "flags": [f.to_dict() for f in self.flags],
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
            "deliveryTotals": self.delivery.to_dict() if self.delivery else None,
            "adStackingFindings": self.stacking.to_dict(),
        }


class ScanSession:
    """Scan-scoped state. Create one per scan and discard it after ``finalize``."""

    def __init__(self, scan_id: str, page_url: str = "", config: AuditConfig | None = None) -> None:
        self.scan_id = scan_id
        self.page_url = page_url
        self.config = config or AuditConfig()
        cfg = self.config
        ledger_args = {
            "ttl_ms": cfg.dedupe_ttl_ms,
            "prune_threshold": cfg.prune_threshold,
            "prune_interval": cfg.prune_interval,
        }
        self.impression_ledger = DedupeLedger(**ledger_args)
        self.render_ledger = DedupeLedger(**ledger_args)
        self.viewable_ledger = DedupeLedger(**ledger_args)
        self.tracker = SlotTimelineTracker(correlation_window_ms=cfg.correlation_window_ms)
        self._sequences: list[ClassifiedEvent] = []
        self._raw_events: list[ClassifiedEvent] = []
        # (request_url, ts) of every ingested request, suppressed duplicates included
        self._requests: list[tuple[str, float]] = []
        self._clicks: deque[UserClick] = deque(maxlen=cfg.max_clicks)
        self._lock = threading.Lock()
        self._finalized = False

    # ----- inputs ----------------------------------------------------------

    def record_request(self, raw: RawRequestEvent) -> ClassifiedEvent | None:
        """Classify and ingest an observed request. Returns the event kept in ``sequences``."""
        event = classify(raw)
        if event is None:
            return None
        return self._ingest(event)

    def record_response(self, raw: RawRequestEvent, status: int | str) -> ClassifiedEvent | None:
        """Attach *status* to the matching request, or ingest the response as a new event.

        A response to a request the ledger suppressed is dropped; the request
        already sits in ``raw_events``.
        """
        event = classify(raw)
        if event is None:
            return None
        with self._lock:
            for i, existing in enumerate(self._sequences):
                if existing.request_url == event.request_url and abs(existing.ts - event.ts) < self.config.response_match_ms:
                    updated = replace(existing, status=status)
                    self._sequences[i] = updated
                    return updated
            if any(
                url == event.request_url and abs(ts - event.ts) < self.config.response_match_ms
                for url, ts in self._requests
            ):
                return None
        return self._ingest(replace(event, status=status))

    def record_navigation(self, url: str, ts: float) -> ClassifiedEvent | None:
        """Frame navigation: only click redirects are kept, tagged ``source="navigation"``."""
        if not url or url == "about:blank":
            return None
        event = classify_url(url, method="GET", resource_type="document", timestamp=ts, frame_url=url, page_url=self.page_url)
        if event is None or event.category != EventCategory.CLICK_REDIRECT:
            return None
        event = replace(event, status=200, source="navigation")
        event = self._correlate_click(event)
        with self._lock:
            self._sequences.append(event)
        return event

    def record_click(self, click: UserClick | dict) -> None:
        if isinstance(click, dict):
            click = UserClick.from_dict(click)
        with self._lock:
            self._clicks.append(click)

    def record_gpt_event(self, evt: GptEvent | dict) -> ClassifiedEvent | None:
        """GPT ``slotRenderEnded`` / ``impressionViewable`` callback."""
        if isinstance(evt, dict):
            evt = GptEvent.from_dict(evt)
        try:
            category = EventCategory(evt.type)
        except ValueError:
            logger.debug("ignoring unknown GPT event type %r", evt.type)
            return None
        if category not in (EventCategory.GPT_SLOT_RENDER, EventCategory.GPT_VIEWABLE):
            logger.debug("ignoring unknown GPT event type %r", evt.type)
            return None

        ts = evt.timestamp
        event = ClassifiedEvent(
            ts=ts,
            category=category,
            vendor=GPT_VENDOR,
            confidence=1.0,
            request_url="gpt-event",
            frame_url=self.page_url,
            page_url=self.page_url,
            creative_id=evt.creative_id,
            placement=evt.placement or evt.ad_unit_path or evt.slot_id,
            line_item_id=evt.line_item_id,
            slot_id=evt.slot_id,
            ad_unit_path=evt.ad_unit_path,
            sizes=evt.sizes,
            is_empty=evt.is_empty,
            status=200,
            source="gpt",
            percent_in_view=evt.percent_in_view,
            duration=evt.duration,
        )
        if category == EventCategory.GPT_SLOT_RENDER:
            self.tracker.record_slot_render(event)
            # Empty slots are not impressions and are never suppressed
            if not event.is_empty and not self.render_ledger.should_count(gpt_render_key(event), ts):
                return None
        elif not self.viewable_ledger.should_count(gpt_viewable_key(event), ts):
            return None
        with self._lock:
            self._sequences.append(event)
        return event

    def record_viewability(self, evt: dict) -> ClassifiedEvent | None:
        """In-page IntersectionObserver fallback measurement (used when GPT is absent)."""
        if evt.get("type") != EventCategory.VIEWABILITY or evt.get("source") != "intersection":
            return None
        event = ClassifiedEvent(
            ts=parse_timestamp(evt.get("timestamp")),
            category=EventCategory.VIEWABILITY,
            vendor=IN_PAGE_VENDOR,
            confidence=0.8,
            request_url="in-page-measurement",
            frame_url=self.page_url,
            page_url=self.page_url,
            creative_id=evt.get("creativeId"),
            placement=evt.get("placement"),
            status=200,
            source="in_page",
            percent_in_view=evt.get("percentInView"),
            duration=evt.get("duration"),
        )
        with self._lock:
            self._sequences.append(event)
        return event

    # ----- pipeline --------------------------------------------------------

    def _ingest(self, event: ClassifiedEvent) -> ClassifiedEvent | None:
        with self._lock:
            self._raw_events.append(event)
            self._requests.append((event.request_url, event.ts))

        if event.category == EventCategory.IMPRESSION_BEACON:
            if not self.impression_ledger.should_count(beacon_dedupe_key(event), event.ts):
                return None
        elif event.category == EventCategory.GAM_AD_REQUEST:
            self.tracker.record_gam_request(event)
        elif event.category == EventCategory.CLICK_REDIRECT:
            event = self._correlate_click(event)

        with self._lock:
            self._sequences.append(event)
        return event

    def _correlate_click(self, event: ClassifiedEvent) -> ClassifiedEvent:
        """Keep the redirect if a user click preceded it within the window, else SUSPECT_CLICK."""
        window = self.config.click_window_ms
        with self._lock:
            clicks = list(self._clicks)
        if any(0 <= event.ts - c.timestamp <= window for c in clicks):
            return event
        return event.with_category(EventCategory.SUSPECT_CLICK, SUSPECT_CLICK_CONFIDENCE)

    # ----- outputs ---------------------------------------------------------

    @property
    def sequences(self) -> list[ClassifiedEvent]:
        with self._lock:
            return sorted(self._sequences, key=lambda e: e.ts)

    @property
    def raw_events(self) -> list[ClassifiedEvent]:
        with self._lock:
            return list(self._raw_events)

    def finalize(
        self,
        iframes: Iterable[IframeGeometrySnapshot | dict] = (),
        viewport: Viewport | None = None,
        *,
        delivery: DeliveryTotals | None = None,
    ) -> ScanReport:
        """Run the stacking pass and build the report. Safe on a partial (aborted) scan."""
        with scan_context(self.scan_id):
            snapshots = [
                s if isinstance(s, IframeGeometrySnapshot) else IframeGeometrySnapshot.from_dict(s, i)
                for i, s in enumerate(iframes)
            ]
            candidates = [s for s in snapshots if is_ad_candidate(s)]
            stacking = detect(candidates, viewport or DEFAULT_VIEWPORT, self.config)

            sequences = self.sequences
            flags = build_flags(sequences, self.config.discrepancy_threshold)
            summary = build_summary(sequences, self.tracker, stacking, flags_count=len(flags))
            reconciliation = reconcile(delivery, summary) if delivery is not None else None

            if self._finalized:
                logger.warning("scan finalized more than once")
            self._finalized = True
            logger.info(
                "scan finalized: %d sequences, %d raw events, served=%d verified=%d viewable=%d, %d flags",
                len(sequences),
                len(self._raw_events),
                summary.served_impressions,
                summary.verified_impressions,
                summary.viewable_impressions,
                len(flags),
            )
            return ScanReport(
                scan_id=self.scan_id,
                page_url=self.page_url,
                sequences=tuple(sequences),
                raw_events=tuple(self.raw_events),
                summary=summary,
                flags=tuple(flags),
                stacking=stacking,
                iframes=tuple(candidates),
                renders=tuple(self.tracker.renders()),
                gam_requests=tuple(self.tracker.gam_requests()),
                reconciliation=reconciliation,
                delivery=delivery,
                config=self.config,
            )
