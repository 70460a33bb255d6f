# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Ordered-rule network request classifier.

Every observed request is labelled with exactly one ``EventCategory`` (or
none) by walking ``RULES`` top to bottom; the first rule whose predicate
matches wins.  Rule 1 (script resources) is absolute: nothing below it is
consulted for a script, so tag libraries whose URLs happen to contain
``adurl=`` or ``/click`` can never be counted as clicks or impressions.

Vendor names are a side lookup (``extract_vendor``) against a
longest-key-first substring table.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from . import ClassifiedEvent, EventCategory, Identifiers, RawRequestEvent

logger = logging.getLogger("adaudit.classifier")

# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

_TAG_LIBRARY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"/tag/js/gpt\.js",
        r"/tag/js/gpt_mobile\.js",
        r"pubads_impl\.js",
        r"teads\.tv/analytics/tag\.js",
        r"prebid\.js",
        r"prebid\.min\.js",
        r"amazon-adsystem\.com/aax2/apstag\.js",
        r"/gpt\.js",
        r"/pubads_impl",
        r"/prebid",
        r"/apstag\.js",
    )
)

_ID_SYNC_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"/sync\.php",
        r"idsync",
        r"setuid",
        r"/cm/",
        r"cm\.g\.doubleclick\.net/pixel",
        r"pixel\.rubiconproject\.com/.*sync",
        r"pixel\.tapad\.com/idsync",
        r"ap\.lijit\.com/pixel",
        r"match\.adsrvr\.org",
        r"bidswitch\.net/.*sync",
        r"criteo\.com/.*sync",
    )
)

_SYNC_KEYWORD = re.compile(r"match|cookie|usersync|syncing")

AD_TECH_SYNC_DOMAINS: tuple[str, ...] = (
    "doubleclick.net",
    "rubiconproject.com",
    "tapad.com",
    "lijit.com",
    "adsrvr.org",
    "bidswitch.net",
    "criteo.com",
    "pubmatic.com",
    "openx.com",
)

_CLICK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p) for p in (r"adurl=", r"/click", r"/clk", r"/redirect", r"/adclick")
)

_GAM_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"/gampad/ads"),
    re.compile(r"securepubads.*/gampad/"),
)

_IMPRESSION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"/imp[^a-z]",
        r"/impression",
        r"/pixel",
        r"/view[^a-z]",
        r"/event",
        r"/beacon",
        r"/ping",
    )
)

IMPRESSION_RESOURCE_TYPES = frozenset({"image", "xhr", "fetch", "beacon", "ping"})

_AD_REQUEST_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p) for p in (r"/pagead/", r"/bid", r"/auction", r"openrtb", r"adsystem\.com")
)

AD_DOMAINS: tuple[str, ...] = (
    "doubleclick.net",
    "googlesyndication.com",
    "amazon-adsystem.com",
    "pubmatic.com",
    "criteo.com",
    "rubiconproject.com",
    "adsystem",
    "adserver",
    "adtech",
)

VENDOR_MAP: dict[str, str] = {
    "doubleclick": "Google",
    "googlesyndication": "Google",
    "google": "Google",
    "googleads": "Google",
    "googletagservices": "Google",
    "securepubads": "Google",
    "amazon-adsystem": "Amazon",
    "pubmatic": "PubMatic",
    "criteo": "Criteo",
    "rubiconproject": "Rubicon",
    "teads": "Teads",
    "teads.tv": "Teads",
    "ias.com": "IAS",
    "moatads.com": "MOAT",
    "doubleverify.com": "DoubleVerify",
    "dv.com": "DoubleVerify",
    "facebook.com": "Facebook",
    "facebook.net": "Facebook",
    "meta": "Meta",
    "prebid": "Prebid",
}

# Longest key first so "googlesyndication" wins over "google", "teads.tv" over "teads"
_VENDOR_KEYS: tuple[str, ...] = tuple(sorted(VENDOR_MAP, key=lambda k: (-len(k), k)))


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Request:
    """Lower-cased view of a request, built once per classification."""

    url: str
    path: str
    hostname: str
    method: str
    resource_type: str


def _any(patterns: tuple[re.Pattern[str], ...], req: _Request) -> bool:
    return any(p.search(req.url) or p.search(req.path) for p in patterns)


def is_id_sync(req: _Request) -> bool:
    if _any(_ID_SYNC_PATTERNS, req):
        return True
    return bool(_SYNC_KEYWORD.search(req.url)) and any(d in req.hostname for d in AD_TECH_SYNC_DOMAINS)


def is_gam_request(req: _Request) -> bool:
    return _any(_GAM_PATTERNS, req)


@dataclass(frozen=True, slots=True)
class RuleDef:
    """One classification rule. ``vendor`` of ``None`` means "look it up"."""

    name: str
    category: EventCategory
    confidence: float
    matches: Callable[[_Request], bool]
    vendor: str | None = None


RULES: tuple[RuleDef, ...] = (
    RuleDef(
        name="script_resource",
        category=EventCategory.TAG_LIBRARY,
        confidence=0.95,
        matches=lambda r: r.resource_type == "script",
    ),
    RuleDef(
        name="tag_library_url",
        category=EventCategory.TAG_LIBRARY,
        confidence=0.95,
        matches=lambda r: _any(_TAG_LIBRARY_PATTERNS, r),
    ),
    RuleDef(
        name="id_sync",
        category=EventCategory.ID_SYNC,
        confidence=0.9,
        matches=is_id_sync,
    ),
    RuleDef(
        name="click_redirect",
        category=EventCategory.CLICK_REDIRECT,
        confidence=0.85,
        matches=lambda r: _any(_CLICK_PATTERNS, r),
    ),
    RuleDef(
        name="gam_ad_request",
        category=EventCategory.GAM_AD_REQUEST,
        confidence=0.85,
        matches=is_gam_request,
        vendor="Google",
    ),
    RuleDef(
        name="impression_beacon",
        category=EventCategory.IMPRESSION_BEACON,
        confidence=0.8,
        matches=lambda r: (
            r.resource_type in IMPRESSION_RESOURCE_TYPES and not is_id_sync(r) and _any(_IMPRESSION_PATTERNS, r)
        ),
    ),
    RuleDef(
        name="ad_request",
        category=EventCategory.AD_REQUEST,
        confidence=0.7,
        matches=lambda r: not is_gam_request(r) and _any(_AD_REQUEST_PATTERNS, r),
    ),
    RuleDef(
        name="ad_domain_get",
        category=EventCategory.OTHER,
        confidence=0.3,
        matches=lambda r: r.method == "GET" and any(d in r.hostname for d in AD_DOMAINS),
    ),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_vendor(hostname: str | None, url: str | None = None) -> str:
    """Map a hostname/URL to a canonical vendor name.

    Falls back to the second-level domain label with its first letter
    upper-cased, then to ``"Unknown"``.
    """
    host = (hostname or "").lower()
    lowered = (url or "").lower()
    for key in _VENDOR_KEYS:
        if key in host or key in lowered:
            return VENDOR_MAP[key]
    parts = (hostname or "").split(".")
    if len(parts) >= 2 and parts[-2]:
        label = parts[-2]
        return label[0].upper() + label[1:]
    return "Unknown"


_ID_PARAMS: dict[str, tuple[str, ...]] = {
    "creative_id": ("crid", "creative_id", "adid", "ad_id", "creativeId"),
    "placement": ("placement", "placement_id", "slotname", "iu", "slot"),
    "site_id": ("siteId", "site_id", "site"),
    "line_item_id": ("line_item_id", "lineItemId", "li"),
    "campaign_id": ("campaign_id", "campaignId", "cid"),
}


def extract_identifiers(url: str | None) -> Identifiers:
    """Read creative/placement/site/line-item/campaign ids from the query string."""
    if not url:
        return Identifiers()
    try:
        query = parse_qs(urlsplit(url).query, keep_blank_values=True)
    except ValueError:
        return Identifiers()

    def first(names: tuple[str, ...]) -> str | None:
        for name in names:
            values = query.get(name)
            if values and values[0]:
                return values[0]
        return None

    return Identifiers(**{attr: first(names) for attr, names in _ID_PARAMS.items()})


def match_rule(event: RawRequestEvent) -> RuleDef | None:
    """Return the first rule matching *event*, or ``None``."""
    if not event.url or not isinstance(event.url, str):
        return None
    req = _Request(
        url=event.url.lower(),
        path=(event.path or "").lower(),
        hostname=(event.hostname or "").lower(),
        method=event.method or "GET",
        resource_type=event.resource_type or "other",
    )
    for rule in RULES:
        if rule.matches(req):
            return rule
    return None


def classify(event: RawRequestEvent) -> ClassifiedEvent | None:
    """Classify one request. Returns ``None`` when it is not ad traffic.

    Never raises: a malformed event is logged at DEBUG and treated as
    unclassifiable.
    """
    try:
        rule = match_rule(event)
        if rule is None:
            return None
        vendor = rule.vendor or extract_vendor(event.hostname, event.url)
        return ClassifiedEvent.from_raw(
            event,
            rule.category,
            vendor,
            rule.confidence,
            rule=rule.name,
            identifiers=extract_identifiers(event.url),
        )
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug("unclassifiable request %r: %s", getattr(event, "url", None), e)
        return None


def classify_url(
    url: str,
    *,
    method: str = "GET",
    resource_type: str | None = None,
    timestamp: float = 0.0,
    frame_url: str = "",
    page_url: str = "",
) -> ClassifiedEvent | None:
    """Parse *url* and classify it; an unparseable URL yields ``None``."""
    try:
        raw = RawRequestEvent.from_url(
            url,
            method=method,
            resource_type=resource_type,
            timestamp=timestamp,
            frame_url=frame_url,
            page_url=page_url,
        )
    except ValueError as e:
        logger.debug("dropping malformed request url %r: %s", url, e)
        return None
    return classify(raw)
