# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for adaudit.summary — counts, creative flags, delivery reconciliation."""

from __future__ import annotations

import pytest

from adaudit.correlation import SlotTimelineTracker
from adaudit.stacking import StackingFindings
from adaudit.summary import (
    DeliveryTotals,
    Diagnostic,
    ScanSummary,
    build_flags,
    build_summary,
    creative_key,
    discrepancy_percent,
    parse_delivery_totals,
    reconcile,
)
from tests._event_helpers import CLICK_URL, GAM_ADS, GPT_JS, ev, render, viewable


def _summary(total: int, viewable_count: int, clicks: int = 0) -> ScanSummary:
    return ScanSummary(
        total_impressions=total,
        served_impressions=total,
        verified_impressions=total,
        viewable_impressions=viewable_count,
        clicks=clicks,
        discrepancy_percent=discrepancy_percent(total, viewable_count),
        sequences_count=0,
        flags_count=0,
        diagnostic=Diagnostic(),
        stacking=StackingFindings(),
    )


class TestDiscrepancy:
    @pytest.mark.parametrize(
        "total,viewable_count,expected",
        [(10, 8, 20.0), (3, 1, 66.67), (0, 0, None), (10, 0, None), (0, 3, None)],
    )
    def test_discrepancy(self, total: int, viewable_count: int, expected: float | None):
        assert discrepancy_percent(total, viewable_count) == expected


class TestBuildSummary:
    def test_counts(self):
        tracker = SlotTimelineTracker()
        r = render(2_000)
        tracker.record_slot_render(r)
        gam = ev(GAM_ADS, resource_type="xhr", ts=1_000)
        mapped = ev("https://ads.example.com/imp?crid=c1", ts=2_100)
        orphan = ev("https://ads.example.com/imp?crid=zzz", ts=2_200)
        sequences = [
            ev(GPT_JS, resource_type="script"),
            gam,
            r,
            render(2_050, slot="s2", empty=True),
            mapped,
            orphan,
            viewable(3_000),
            ev(CLICK_URL, resource_type="document", ts=4_000),
        ]
        summary = build_summary(sequences, tracker, StackingFindings(), flags_count=2)
        assert summary.served_impressions == 1
        assert summary.verified_impressions == 3
        assert summary.total_impressions == 2
        assert summary.viewable_impressions == 1
        assert summary.clicks == 1
        assert summary.discrepancy_percent == 50.0
        assert summary.flags_count == 2
        assert summary.diagnostic.tag_library_loads == 1
        assert summary.diagnostic.gam_ad_requests == 1
        assert summary.diagnostic.unattributed_beacons == 1
        assert summary.diagnostic.total_events == len(sequences)

    def test_empty(self):
        summary = build_summary([], SlotTimelineTracker(), StackingFindings())
        assert summary.total_impressions == 0
        assert summary.discrepancy_percent is None
        data = summary.to_dict()
        assert data["adStackingFindings"]["findingsCount"] == 0
        assert data["diagnostic"]["suspectClicks"] == 0


class TestFlags:
    def test_gap_above_threshold(self):
        sequences = [render(0), render(100, slot="s2"), viewable(200)]
        flags = build_flags(sequences, 10.0)
        assert len(flags) == 1
        flag = flags[0]
        assert (flag.creative_id, flag.impressions, flag.viewable, flag.discrepancy) == ("c1", 2, 1, 50.0)
        assert flag.message == "Viewability gap: 50% (1/2 verified)"

    def test_gap_equal_to_threshold_not_flagged(self):
        assert build_flags([render(0), render(100, slot="s2"), viewable(200)], 50.0) == []

    def test_no_viewability_data_not_flagged(self):
        assert build_flags([render(0), render(100)], 10.0) == []

    def test_empty_renders_not_impressions(self):
        assert build_flags([render(0, empty=True), viewable(10)], 10.0) == []

    def test_clicks_counted_per_creative(self):
        click = ev("https://adclick.g.doubleclick.net/pcs/click?crid=c1&adurl=x", resource_type="document")
        flags = build_flags([render(0), render(1, slot="s2"), viewable(2), click], 10.0)
        assert flags[0].clicks == 1

    def test_gpt_creative_key_falls_back_to_slot(self):
        assert creative_key(render(0, creative=None)) == "s1"
        assert creative_key(ev("https://ads.example.com/imp?x=1")) is None


class TestDeliveryTotals:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ('{"adserverImps": 1000, "dspImps": "950", "clicks": 12}', DeliveryTotals(1000, 950, 12)),
            ('{"adserver_imps": "1200abc", "dsp_imps": 7}', DeliveryTotals(1200, 7, 0)),
            ("Adserver Impressions,DSP Impressions,Clicks\n1000,900,5", DeliveryTotals(1000, 900, 5)),
            ("adserver,clicks\n 42 ,3\n", DeliveryTotals(42, 0, 3)),
        ],
    )
    def test_parse(self, text: str, expected: DeliveryTotals):
        assert parse_delivery_totals(text) == expected

    @pytest.mark.parametrize("text", [None, "", "   ", "just one line", "[1, 2]"])
    def test_unparseable(self, text: str | None):
        assert parse_delivery_totals(text) is None


class TestReconcile:
    def test_reconcile(self):
        result = reconcile(DeliveryTotals(1000, 800, 5), _summary(900, 450, clicks=3))
        assert result.verified_viewability_rate == 50.0
        assert result.discrepancy_vs_adserver == 10.0
        assert result.discrepancy_vs_dsp == -12.5
        assert (result.detected_clicks, result.reported_clicks) == (3, 5)

    def test_zero_denominators(self):
        result = reconcile(DeliveryTotals(0, 0, 0), _summary(0, 0))
        assert result.verified_viewability_rate is None
        assert result.discrepancy_vs_adserver is None
        assert result.discrepancy_vs_dsp is None

    def test_to_dict_keys(self):
        data = reconcile(DeliveryTotals(10, 10, 0), _summary(5, 5)).to_dict()
        assert data["discrepancyVsDSP"] == 50.0
        assert data["discrepancyVsAdserver"] == 50.0
        assert data["verifiedViewabilityRate"] == 100.0
