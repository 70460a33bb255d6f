# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Ad impression audit: forensic verification of vendor-reported ad impressions.

Turns the raw browser events of one scan into an auditable verdict:
- classifier: network request -> event category + vendor
- dedupe / correlation: noisy events -> verified impression counts
- stacking: iframe geometry -> hidden/tiny/offscreen/stacked placements
- aggregator / verdict: per-vendor statistics -> gated, scored verdict
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import StrEnum
from urllib.parse import urlsplit

__version__ = "0.1.0"

__all__ = [
    "ClassifiedEvent",
    "EventCategory",
    "GptEvent",
    "Identifiers",
    "RawRequestEvent",
    "UserClick",
    "parse_timestamp",
]


class EventCategory(StrEnum):
    """Event taxonomy. The classifier only emits the network categories."""

    TAG_LIBRARY = "TAG_LIBRARY"
    ID_SYNC = "ID_SYNC"
    CLICK_REDIRECT = "CLICK_REDIRECT"
    GAM_AD_REQUEST = "GAM_AD_REQUEST"
    IMPRESSION_BEACON = "IMPRESSION_BEACON"
    AD_REQUEST = "AD_REQUEST"
    OTHER = "OTHER"
    # Assigned by the scan orchestration layer
    GPT_SLOT_RENDER = "GPT_SLOT_RENDER"
    GPT_VIEWABLE = "GPT_VIEWABLE"
    VIEWABILITY = "VIEWABILITY"
    SUSPECT_CLICK = "SUSPECT_CLICK"


NETWORK_CATEGORIES = frozenset(
    {
        EventCategory.TAG_LIBRARY,
        EventCategory.ID_SYNC,
        EventCategory.CLICK_REDIRECT,
        EventCategory.GAM_AD_REQUEST,
        EventCategory.IMPRESSION_BEACON,
        EventCategory.AD_REQUEST,
        EventCategory.OTHER,
    }
)


def parse_timestamp(value: object) -> float:
    """Epoch milliseconds from a payload field; missing, garbled or non-finite values read as 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        ts = float(value or 0)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return ts if math.isfinite(ts) else 0.0


@dataclass(frozen=True, slots=True)
class RawRequestEvent:
    """One observed network request (timestamps in epoch milliseconds)."""

    url: str
    hostname: str
    path: str
    method: str = "GET"
    resource_type: str = "other"
    timestamp: float = 0.0
    frame_url: str = ""
    page_url: str = ""

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        method: str = "GET",
        resource_type: str | None = None,
        timestamp: float = 0.0,
        frame_url: str = "",
        page_url: str = "",
    ) -> RawRequestEvent:
        """Build an event from a URL, splitting out hostname and path.

        Raises:
            ValueError: If *url* is empty or cannot be parsed.
        """
        if not url or not isinstance(url, str):
            raise ValueError("request url is empty")
        parts = urlsplit(url)
        return cls(
            url=url,
            hostname=parts.hostname or "",
            path=parts.path,
            method=(method or "GET").upper(),
            resource_type=resource_type or "other",
            timestamp=parse_timestamp(timestamp),
            frame_url=frame_url,
            page_url=page_url,
        )


@dataclass(frozen=True, slots=True)
class Identifiers:
    """Ad identifiers carried in a request's query string."""

    creative_id: str | None = None
    placement: str | None = None
    site_id: str | None = None
    line_item_id: str | None = None
    campaign_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "creativeId": self.creative_id,
            "placement": self.placement,
            "siteId": self.site_id,
            "lineItemId": self.line_item_id,
            "campaignId": self.campaign_id,
        }


@dataclass(frozen=True, slots=True)
class ClassifiedEvent:
    """A categorised event as it appears in a scan's sequence list."""

    ts: float
    category: EventCategory
    vendor: str
    confidence: float
    request_url: str
    hostname: str = ""
    path: str = ""
    method: str = "GET"
    resource_type: str = "other"
    frame_url: str = ""
    page_url: str = ""
    rule: str = ""  # name of the classifier rule that fired
    identifiers: Identifiers = field(default_factory=Identifiers)
    creative_id: str | None = None
    placement: str | None = None
    line_item_id: str | None = None
    slot_id: str | None = None
    ad_unit_path: str | None = None
    sizes: str | None = None
    is_empty: bool = False
    status: int | str | None = None
    source: str = "network"  # network | navigation | gpt | in_page
    percent_in_view: float | None = None
    duration: float | None = None

    @classmethod
    def from_raw(
        cls,
        raw: RawRequestEvent,
        category: EventCategory,
        vendor: str,
        confidence: float,
        *,
        rule: str = "",
        identifiers: Identifiers | None = None,
    ) -> ClassifiedEvent:
        ids = identifiers or Identifiers()
        return cls(
            ts=raw.timestamp,
            category=category,
            vendor=vendor,
            confidence=confidence,
            request_url=raw.url,
            hostname=raw.hostname,
            path=raw.path,
            method=raw.method,
            resource_type=raw.resource_type,
            frame_url=raw.frame_url,
            page_url=raw.page_url,
            rule=rule,
            identifiers=ids,
            creative_id=ids.creative_id,
            placement=ids.placement,
            line_item_id=ids.line_item_id,
        )

    def with_category(self, category: EventCategory, confidence: float | None = None) -> ClassifiedEvent:
        """Return a copy re-labelled by the orchestration layer."""
        return replace(self, category=category, confidence=self.confidence if confidence is None else confidence)

    def to_dict(self) -> dict:
        data = {
            "ts": self.ts,
            "type": self.category.value,
            "vendor": self.vendor,
            "confidence": self.confidence,
            "creativeId": self.creative_id,
            "placement": self.placement,
            "requestUrl": self.request_url,
            "status": self.status,
            "frameUrl": self.frame_url,
            "pageUrl": self.page_url,
            "resourceType": self.resource_type,
            "source": self.source,
            "identifiers": self.identifiers.to_dict(),
        }
        if self.rule:
            data["rule"] = self.rule
        if self.category in (EventCategory.GPT_SLOT_RENDER, EventCategory.GPT_VIEWABLE):
            data.update(
                slotId=self.slot_id,
                adUnitPath=self.ad_unit_path,
                lineItemId=self.line_item_id,
                sizes=self.sizes,
                isEmpty=self.is_empty,
            )
        if self.percent_in_view is not None or self.duration is not None:
            data.update(percentInView=self.percent_in_view, duration=self.duration)
        return data


@dataclass(frozen=True, slots=True)
class GptEvent:
    """A GPT ``slotRenderEnded`` / ``impressionViewable`` callback from the page."""

    type: str  # GPT_SLOT_RENDER | GPT_VIEWABLE
    timestamp: float
    slot_id: str | None = None
    ad_unit_path: str | None = None
    creative_id: str | None = None
    line_item_id: str | None = None
    sizes: str | None = None
    is_empty: bool = False
    placement: str | None = None
    percent_in_view: float | None = None
    duration: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> GptEvent:
        """Parse the camelCase payload emitted by the in-page hook."""

        def _opt(key: str) -> str | None:
            value = data.get(key)
            return None if value in (None, "") else str(value)

        return cls(
            type=str(data.get("type", "")),
            timestamp=parse_timestamp(data.get("timestamp") or data.get("ts")),
            slot_id=_opt("slotId"),
            ad_unit_path=_opt("adUnitPath"),
            creative_id=_opt("creativeId"),
            line_item_id=_opt("lineItemId"),
            sizes=_opt("sizes"),
            is_empty=bool(data.get("isEmpty", False)),
            placement=_opt("placement"),
            percent_in_view=data.get("percentInView"),
            duration=data.get("duration"),
        )


@dataclass(frozen=True, slots=True)
class UserClick:
    """A user click captured by the document-level listener."""

    timestamp: float
    x: float = 0
    y: float = 0
    tag_name: str = ""
    id: str = ""
    class_name: str = ""
    href: str | None = None
    context: str = "unknown"  # ad-likely | unknown

    @classmethod
    def from_dict(cls, data: dict) -> UserClick:
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")),
            x=data.get("x", 0) or 0,
            y=data.get("y", 0) or 0,
            tag_name=data.get("tagName", "") or "",
            id=data.get("id", "") or "",
            class_name=data.get("className", "") or "",
            href=data.get("href"),
            context=data.get("context", "unknown") or "unknown",
        )
