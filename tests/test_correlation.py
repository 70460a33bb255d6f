# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for adaudit.correlation — GAM time window and beacon identity matching."""

from __future__ import annotations

from dataclasses import replace

import pytest

from adaudit.correlation import (
    UNKNOWN_SLOT,
    SlotTimelineTracker,
    extract_slot_from_url,
    gam_slot_key,
    render_slot_key,
)
from tests._event_helpers import GAM_ADS, ev, render


def _gam(ts: float, url: str = GAM_ADS):
    return ev(url, resource_type="xhr", ts=ts)


def _tracker(*renders, window: float = 5_000) -> SlotTimelineTracker:
    tracker = SlotTimelineTracker(correlation_window_ms=window)
    for r in renders:
        tracker.record_slot_render(r)
    return tracker


class TestSlotKeys:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://x.example/ads?slot=top", "top"),
            ("https://x.example/ads?slot_id=side", "side"),
            ("https://x.example/ads?adslot=foot", "foot"),
            ("https://x.example/ads?slot=&adslot=foot", "foot"),
            ("https://x.example/ads", None),
            (None, None),
        ],
    )
    def test_extract_slot(self, url: str | None, expected: str | None):
        assert extract_slot_from_url(url) == expected

    def test_gam_key_prefers_slot_id(self):
        assert gam_slot_key(replace(_gam(0), slot_id="explicit")) == "explicit"

    def test_gam_key_from_url(self):
        assert gam_slot_key(_gam(0)) == "s1"

    def test_gam_key_from_ad_unit_path(self):
        event = replace(_gam(0, "https://securepubads.g.doubleclick.net/gampad/ads?iu=/1/x"), ad_unit_path="/1/x")
        assert gam_slot_key(event) == "/1/x"

    def test_gam_key_unknown(self):
        assert gam_slot_key(_gam(0, "https://securepubads.g.doubleclick.net/gampad/ads")) == UNKNOWN_SLOT

    def test_render_key(self):
        assert render_slot_key(render(0)) == "s1"
        assert render_slot_key(render(0, slot=None)) == "/a"
        assert render_slot_key(render(0, slot=None, ad_unit=None)) == UNKNOWN_SLOT


class TestGamCorrelation:
    def test_render_within_window(self):
        assert _tracker(render(6_000)).can_correlate_gam_request(_gam(1_000))

    def test_render_at_request_time(self):
        assert _tracker(render(1_000)).can_correlate_gam_request(_gam(1_000))

    def test_render_after_window(self):
        assert not _tracker(render(6_001)).can_correlate_gam_request(_gam(1_000))

    def test_render_before_request(self):
        assert not _tracker(render(999)).can_correlate_gam_request(_gam(1_000))

    def test_empty_render_ignored(self):
        assert not _tracker(render(2_000, empty=True)).can_correlate_gam_request(_gam(1_000))

    def test_other_slot_ignored(self):
        assert not _tracker(render(2_000, slot="s2")).can_correlate_gam_request(_gam(1_000))

    def test_custom_window(self):
        tracker = _tracker(render(1_500), window=400)
        assert not tracker.can_correlate_gam_request(_gam(1_000))


class TestBeaconMapping:
    def test_creative_match_any_slot_any_time(self):
        tracker = _tracker(render(90_000, slot="s9", creative="c1", line_item=None))
        beacon = ev("https://ads.example.com/imp?crid=c1", ts=0)
        assert tracker.can_map_to_slot_render(beacon)

    def test_line_item_match(self):
        tracker = _tracker(render(0, creative=None, line_item="l7"))
        assert tracker.can_map_to_slot_render(ev("https://ads.example.com/imp?li=l7"))

    def test_no_identifiers(self):
        tracker = _tracker(render(0))
        assert not tracker.can_map_to_slot_render(ev("https://ads.example.com/imp?x=1"))

    def test_empty_render_not_mapped(self):
        tracker = _tracker(render(0, empty=True))
        assert not tracker.can_map_to_slot_render(ev("https://ads.example.com/imp?crid=c1"))

    def test_mismatch(self):
        tracker = _tracker(render(0))
        assert not tracker.can_map_to_slot_render(ev("https://ads.example.com/imp?crid=zzz"))


class TestTimelines:
    def test_renders_sorted(self):
        tracker = _tracker(render(300, slot="b"), render(100, slot="a"), render(200, slot="b"))
        assert [r.ts for r in tracker.renders()] == [100, 200, 300]

    def test_gam_requests_recorded(self):
        tracker = SlotTimelineTracker()
        tracker.record_gam_request(_gam(20))
        tracker.record_gam_request(_gam(10))
        records = tracker.gam_requests()
        assert [r.ts for r in records] == [10, 20]
        assert records[0].slot_id == "s1"
        assert records[0].url == GAM_ADS
