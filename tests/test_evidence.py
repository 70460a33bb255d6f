# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for adaudit.evidence — pack contract and scan-report derivation."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from adaudit.aggregator import aggregate
from adaudit.errors import EvidenceContractError
from adaudit.evidence import EvidencePack, build_evidence_pack, dump_evidence_pack, load_evidence_pack
from adaudit.scan import ScanReport, ScanSession
from tests._event_helpers import PAGE, evidence, frame, gpt_payload, raw, ref

SCANNED_AT = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


# ── Loading ─────────────────────────────────────────────────────────


class TestLoad:
    @pytest.mark.parametrize("data", [{}, {"runId": ""}, {"targetUrl": PAGE}])
    def test_run_id_required(self, data: dict):
        with pytest.raises(EvidenceContractError) as exc_info:
            load_evidence_pack(data)
        assert exc_info.value.field in ("runId", "run_id")

    def test_camel_case(self):
        pack = load_evidence_pack(evidence(duplicateAdImpression=3))
        assert pack.run_id == "run-1"
        flag = pack.summary_flags.duplicate_ad_impression
        assert flag.count == 3
        assert flag.evidence_refs[0].id == "duplicateAdImpression-0"

    def test_snake_case(self):
        pack = load_evidence_pack(
            {"run_id": "r", "summary_flags": {"ad_stacking": {"count": 2, "evidence_refs": [ref()]}}}
        )
        assert pack.summary_flags.ad_stacking.count == 2
        assert pack.summary_flags.any_evidence_refs()

    def test_json_text(self):
        pack = load_evidence_pack(json.dumps(evidence(adStacking=1)))
        assert pack.summary_flags.ad_stacking.count == 1

    def test_invalid_json_text(self):
        with pytest.raises(EvidenceContractError):
            load_evidence_pack("{not json")

    def test_bad_ref_type(self):
        data = evidence(adStacking=1)
        data["summaryFlags"]["adStacking"]["evidenceRefs"][0]["type"] = "telepathy"
        with pytest.raises(EvidenceContractError) as exc_info:
            load_evidence_pack(data)
        assert exc_info.value.field.startswith("summaryFlags")

    def test_null_count_reads_as_zero(self):
        data = evidence(adStacking=1)
        data["summaryFlags"]["adStacking"]["count"] = None
        data["summaryFlags"]["phantomScroll"] = {"count": None}
        pack = load_evidence_pack(data)
        assert pack.summary_flags.ad_stacking.count == 0
        assert pack.summary_flags.phantom_scroll.count == 0
        assert pack.summary_flags.any_evidence_refs()

    def test_non_numeric_count_rejected(self):
        data = evidence(adStacking=1)
        data["summaryFlags"]["adStacking"]["count"] = "many"
        with pytest.raises(EvidenceContractError):
            load_evidence_pack(data)

    def test_unknown_keys_kept(self):
        data = evidence()
        data["scannerVersion"] = "9.9"
        pack = load_evidence_pack(data)
        assert pack.model_extra == {"scannerVersion": "9.9"}
        assert pack.to_dict()["scannerVersion"] == "9.9"

    def test_pack_passthrough(self):
        pack = EvidencePack(run_id="r")
        assert load_evidence_pack(pack) is pack

    def test_defaults(self):
        pack = load_evidence_pack({"runId": "r"})
        assert pack.ads.gam.impressions == []
        assert pack.analytics.ga4.ids == []
        assert not pack.summary_flags.any_evidence_refs()


class TestSummaryFlags:
    def test_flag_names(self):
        names = list(load_evidence_pack({"runId": "r"}).summary_flags.flags())
        assert names == [
            "duplicateAdImpression",
            "autoRefreshInflation",
            "phantomScroll",
            "multipleGa4Ids",
            "multipleGtmContainers",
            "pixelStuffing1x1",
            "hiddenTinyFrames",
            "adStacking",
            "multipleGa4PageView",
            "sessionInflation",
        ]

    def test_refs_only_count_when_present(self):
        flags = load_evidence_pack(evidence(with_refs=False, adStacking=5)).summary_flags
        assert flags.ad_stacking.count == 5
        assert not flags.any_evidence_refs()


# ── Scan report -> pack ─────────────────────────────────────────────


@pytest.fixture
def report() -> ScanReport:
    session = ScanSession("scan-1", PAGE)
    session.record_request(raw("https://example.com/pixel?creative_id=123&cb=1", ts=1_000))
    session.record_request(raw("https://example.com/pixel?creative_id=123&cb=2", ts=1_500))
    session.record_request(raw("https://securepubads.g.doubleclick.net/gampad/ads?slot=s1", resource_type="xhr", ts=900))
    session.record_gpt_event(gpt_payload("GPT_SLOT_RENDER", 1_000))
    session.record_gpt_event(gpt_payload("GPT_SLOT_RENDER", 1_100, slotId="s2", isEmpty=True))
    return session.finalize(
        [
            frame("ad-1", 0, 0, 300, 250),
            frame("ad-2", 0, 0, 300, 250),
            frame("ad-pixel", 0, 0, 1, 1, opacity=0),
        ]
    )


def _pack(report: ScanReport, run_id: str = "run-1") -> EvidencePack:
    rows = aggregate(report.raw_events, report.scan_id, "news.example")
    return build_evidence_pack(report, rows, run_id, PAGE, scanned_at=SCANNED_AT)


class TestBuildEvidencePack:
    def test_flags(self, report):
        flags = _pack(report).summary_flags
        assert flags.duplicate_ad_impression.count == 1
        assert flags.duplicate_ad_impression.evidence_refs[0].pointer == "vendorAggregates[0]"
        assert flags.ad_stacking.count == 1
        assert flags.ad_stacking.evidence_refs[0].id == "stack:ad-1:ad-2"
        assert flags.hidden_tiny_frames.count == 1
        assert flags.pixel_stuffing_1x1.count == 1
        assert flags.pixel_stuffing_1x1.evidence_refs[0].id == "iframe:ad-pixel"
        assert flags.phantom_scroll.count == 0

    def test_gam_section(self, report):
        gam = _pack(report).ads.gam
        assert len(gam.impressions) == 1
        assert gam.impressions[0].slot_id == "s1"
        assert gam.impressions[0].ts == "1970-01-01T00:00:01.000Z"
        assert gam.requests == [
            {
                "url": "https://securepubads.g.doubleclick.net/gampad/ads?slot=s1",
                "slotId": "s1",
                "ts": "1970-01-01T00:00:00.900Z",
            }
        ]

    def test_dom_section(self, report):
        iframes = _pack(report).dom.iframes
        assert [f.evidence_ref.id for f in iframes] == ["iframe:ad-1", "iframe:ad-2", "iframe:ad-pixel"]
        assert iframes[0].overlapped_pct == 1.0
        assert iframes[2].overlapped_pct == 0.0
        assert iframes[2].css["opacity"] == 0

    def test_header(self, report):
        pack = _pack(report)
        assert pack.run_id == "run-1"
        assert pack.target_url == PAGE
        assert pack.scanned_at == "2026-01-02T03:04:05Z"

    def test_empty_run_id(self, report):
        with pytest.raises(EvidenceContractError):
            _pack(report, run_id="")

    def test_dump_reloads(self, report):
        text = dump_evidence_pack(_pack(report))
        data = json.loads(text)
        assert data["summaryFlags"]["adStacking"]["count"] == 1
        assert "ids" not in data["summaryFlags"]["adStacking"]
        assert load_evidence_pack(text).summary_flags.ad_stacking.count == 1
