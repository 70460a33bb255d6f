# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""TTL deduplication ledger and dedupe-key builders.

A key counts on first sight and again only once ``ttl_ms`` has elapsed
since its last *counted* occurrence; suppressed duplicates never move the
window.  Expired keys are pruned opportunistically (size threshold or every
Nth counted insertion), so a long scan stays bounded in amortised O(1).

Thread-safe: request, response and navigation callbacks may feed one
ledger concurrently.
"""

from __future__ import annotations

import logging
import re
import threading
from urllib.parse import parse_qsl, urlencode, urlsplit

from . import ClassifiedEvent
from .config import DEFAULT_DEDUPE_TTL_MS

logger = logging.getLogger("adaudit.dedupe")

CACHE_BUSTER_PARAMS = frozenset({"cb", "cachebust", "_", "ord", "rnd", "t", "timestamp", "nocache", "r"})

_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class DedupeLedger:
    """``key -> (last counted timestamp, ttl it was counted under)``.

    Each entry expires on its own TTL, so a short-TTL call never evicts a
    key that is still inside a longer window.
    """

    def __init__(
        self,
        *,
        ttl_ms: float = DEFAULT_DEDUPE_TTL_MS,
        prune_threshold: int = 1_000,
        prune_interval: int = 100,
    ) -> None:
        self._ttl_ms = ttl_ms
        self._prune_threshold = prune_threshold
        self._prune_interval = prune_interval
        self._seen: dict[str, tuple[float, float]] = {}
        self._counted = 0
        self._lock = threading.Lock()

    def should_count(self, key: str, now: float, ttl_ms: float | None = None) -> bool:
        """Return True if *key* observed at *now* should be counted.

        A counted occurrence records *now*; a suppressed one leaves the stored
        timestamp untouched.
        """
        ttl = self._ttl_ms if ttl_ms is None else ttl_ms
        with self._lock:
            entry = self._seen.get(key)
            if entry is not None and now - entry[0] < ttl:
                return False
            self._seen[key] = (now, ttl)
            self._counted += 1
            if len(self._seen) > self._prune_threshold or self._counted % self._prune_interval == 0:
                self._prune_locked(now)
            return True

    def prune(self, now: float, max_age_ms: float | None = None) -> int:
        """Drop expired entries. Returns the number removed.

        Without *max_age_ms* each entry expires on the TTL it was counted
        under; with it, every entry at least that old goes.
        """
        with self._lock:
            return self._prune_locked(now, max_age_ms)

    def _prune_locked(self, now: float, max_age_ms: float | None = None) -> int:
        stale = [
            k
            for k, (ts, ttl) in self._seen.items()
            if now - ts >= (ttl if max_age_ms is None else max_age_ms)
        ]
        for k in stale:
            del self._seen[k]
        if stale:
            logger.debug("pruned %d expired dedupe keys (%d remain)", len(stale), len(self._seen))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
            self._counted = 0

    @property
    def counted(self) -> int:
        """Number of occurrences counted since creation or the last ``clear()``."""
        return self._counted

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------


def normalize_sizes(sizes: str | None) -> str:
    return _WS_RE.sub("", sizes or "").lower()


def render_dedupe_key(
    slot_id: str | None,
    creative_id: str | None,
    line_item_id: str | None,
    sizes: str | None,
    ad_unit_path: str | None,
) -> str:
    """``slotId|creativeId|lineItemId|sizes|adUnitPath`` for GPT slot renders."""
    return "|".join(
        (slot_id or "", creative_id or "", line_item_id or "", normalize_sizes(sizes), ad_unit_path or "")
    )


def viewable_dedupe_key(slot_id: str | None, creative_id: str | None, line_item_id: str | None) -> str:
    return "|".join((slot_id or "", creative_id or "", line_item_id or ""))


def strip_cache_busters(url: str) -> str:
    """Remove cache-buster query parameters, keeping the others in order.

    Returns *url* unchanged when it cannot be parsed as an absolute URL.
    """
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            return url
        params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in CACHE_BUSTER_PARAMS]
    except (TypeError, ValueError):
        return url
    query = urlencode(params)
    path = parts.path or "/"
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}" + (f"?{query}" if query else "")


def beacon_dedupe_key(event: ClassifiedEvent) -> str:
    """Identifier key when the beacon carries a creative or placement, else the stripped URL."""
    if event.creative_id or event.placement:
        try:
            parts = urlsplit(event.request_url)
            hostname, path = parts.hostname or "", parts.path
        except ValueError:
            return strip_cache_busters(event.request_url)
        return "|".join(
            (event.vendor or "Unknown", hostname, path, event.creative_id or "", event.placement or "")
        )
    return strip_cache_busters(event.request_url)


def gpt_render_key(event: ClassifiedEvent) -> str:
    return render_dedupe_key(event.slot_id, event.creative_id, event.line_item_id, event.sizes, event.ad_unit_path)


def gpt_viewable_key(event: ClassifiedEvent) -> str:
    return viewable_dedupe_key(event.slot_id, event.creative_id, event.line_item_id)
