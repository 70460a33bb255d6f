# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for adaudit.cli — capture replay, commands, exit codes."""

from __future__ import annotations

import asyncio
import json

import pytest

from adaudit import EventCategory, cli
from adaudit.cli import load_capture, main, replay_capture
from adaudit.errors import CaptureFormatError
from adaudit.repository_sqlite import SqliteRepository
from adaudit.scan import ScanSession
from tests._event_helpers import CLICK_URL, GAM_ADS, GPT_JS, evidence


def _capture() -> dict:
    return {
        "scanId": "cap-1",
        "url": "https://www.news.example/article",
        "requests": [
            {"url": GPT_JS, "resourceType": "script", "timestamp": 10},
            {"url": GAM_ADS, "resourceType": "xhr", "timestamp": 1_000},
            {"url": "https://ads.example.com/imp?crid=c1&cb=1", "resourceType": "image", "timestamp": 1_900},
            {"url": "https://ads.example.com/imp?crid=c1&cb=2", "resourceType": "image", "timestamp": 2_000},
            {"url": CLICK_URL, "resourceType": "document", "timestamp": 3_000},
        ],
        "clicks": [{"timestamp": 3_000, "tagName": "A"}],
        "gptEvents": [
            {"type": "GPT_SLOT_RENDER", "timestamp": 1_800, "slotId": "s1", "creativeId": "c1", "adUnitPath": "/123/home"},
            {"type": "GPT_VIEWABLE", "timestamp": 2_500, "slotId": "s1", "creativeId": "c1"},
        ],
        "iframes": [
            {"id": "ad-1", "bbox": {"x": 0, "y": 0, "w": 300, "h": 250}},
            {"id": "ad-2", "bbox": {"x": 0, "y": 0, "w": 300, "h": 250}},
        ],
        "viewport": {"width": 1280, "height": 720},
        "deliveryTotals": {"adserverImps": 4, "dspImps": 2, "clicks": 1},
    }


@pytest.fixture
def capture_file(tmp_path):
    path = tmp_path / "capture.json"
    path.write_text(json.dumps(_capture()), encoding="utf-8")
    return path


@pytest.fixture
def evidence_file(tmp_path):
    path = tmp_path / "pack.json"
    path.write_text(json.dumps(evidence(duplicateAdImpression=12, adStacking=30)), encoding="utf-8")
    return path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


# ── Capture replay ──────────────────────────────────────────────────


class TestReplay:
    def test_click_seen_before_redirect_at_same_timestamp(self):
        report = replay_capture(_capture(), ScanSession("s", "https://www.news.example/article"))
        assert report.summary.clicks == 1
        assert report.summary.diagnostic.suspect_clicks == 0

    def test_summary(self):
        report = replay_capture(_capture(), ScanSession("s"))
        s = report.summary
        assert (s.served_impressions, s.verified_impressions, s.total_impressions) == (1, 3, 2)
        assert s.discrepancy_percent == 50.0
        assert report.stacking.stacked_pairs_count == 1
        assert report.reconciliation.discrepancy_vs_adserver == 50.0

    def test_explicit_delivery_text_wins(self):
        report = replay_capture(_capture(), ScanSession("s"), delivery_text="adserver,dsp,clicks\n10,2,0")
        assert report.delivery.adserver_imps == 10

    def test_bad_entries_dropped(self):
        capture = {"requests": ["nope", {"resourceType": "image"}, {"url": GAM_ADS, "timestamp": "soon"}]}
        report = replay_capture(capture, ScanSession("s"))
        assert [e.category for e in report.sequences] == [EventCategory.GAM_AD_REQUEST]
        assert report.sequences[0].ts == 0

    def test_non_finite_timestamp_reads_as_zero(self):
        capture = {"requests": [{"url": "https://ads.example.com/imp?crid=c1", "resourceType": "image", "timestamp": "1e400"}]}
        report = replay_capture(capture, ScanSession("s"))
        assert [e.ts for e in report.sequences] == [0.0]

    def test_empty_capture(self):
        report = replay_capture({}, ScanSession("s"))
        assert report.sequences == ()
        assert report.delivery is None


class TestLoadCapture:
    def test_ok(self, capture_file):
        assert load_capture(capture_file)["scanId"] == "cap-1"

    @pytest.mark.parametrize(
        "content,match",
        [
            ("{not json", "not valid JSON"),
            ("[1, 2]", "JSON object"),
            ('{"requests": {}}', "'requests' must be a list"),
            ('{"viewport": [1]}', "'viewport'"),
        ],
    )
    def test_malformed(self, tmp_path, content: str, match: str):
        path = tmp_path / "bad.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(CaptureFormatError, match=match):
            load_capture(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CaptureFormatError, match="cannot read"):
            load_capture(tmp_path / "missing.json")


# ── scan command ────────────────────────────────────────────────────


class TestScanCommand:
    def test_json_document(self, capture_file, capsys):
        main(["scan", "--input", str(capture_file)])
        doc = json.loads(capsys.readouterr().out)
        assert set(doc) == {"report", "vendorAggregates", "affectedVendors", "evidencePack", "verdict"}
        assert doc["report"]["scanId"] == "cap-1"
        assert doc["report"]["summary"]["clicks"] == 1
        beacons = [r for r in doc["vendorAggregates"] if r["vendorHost"] == "ads.example.com"]
        assert beacons[0]["impressions"] == 2
        assert beacons[0]["duplicateCount"] == 1
        assert beacons[0]["stackingSuspected"] is True
        assert doc["affectedVendors"]["publisher"]["id"] == "news.example"
        assert doc["evidencePack"]["runId"] == "cap-1"
        assert doc["evidencePack"]["summaryFlags"]["adStacking"]["count"] == 1
        assert doc["verdict"]["verdict"] == "WARN"
        assert doc["verdict"]["classification"]["primary"] == "MIXED_RISK"

    def test_ids_from_flags(self, capture_file, capsys):
        main(["scan", "-i", str(capture_file), "--scan-id", "override", "--publisher", "pub-9"])
        doc = json.loads(capsys.readouterr().out)
        assert doc["report"]["scanId"] == "override"
        assert doc["affectedVendors"]["publisher"]["id"] == "pub-9"

    def test_output_file(self, capture_file, tmp_path, capsys):
        out = tmp_path / "reports" / "scan.json"
        main(["scan", "-i", str(capture_file), "-o", str(out)])
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Saved to" in captured.err
        assert json.loads(out.read_text(encoding="utf-8"))["report"]["scanId"] == "cap-1"

    def test_table_format(self, capture_file, capsys):
        main(["scan", "-i", str(capture_file), "--format", "table"])
        out = capsys.readouterr().out
        assert "Vendor host" in out
        assert "ads.example.com" in out
        assert "G1_Monetization" in out

    def test_config_file(self, capture_file, tmp_path, capsys):
        config = tmp_path / "audit.yaml"
        config.write_text("dedupe_ttl_ms: 50\n", encoding="utf-8")
        main(["scan", "-i", str(capture_file), "--config", str(config)])
        doc = json.loads(capsys.readouterr().out)
        beacons = [e for e in doc["report"]["sequences"] if e["type"] == "IMPRESSION_BEACON"]
        assert len(beacons) == 2

    def test_delivery_file(self, capture_file, tmp_path, capsys):
        delivery = tmp_path / "delivery.csv"
        delivery.write_text("adserver,dsp,clicks\n8,2,1\n", encoding="utf-8")
        main(["scan", "-i", str(capture_file), "--delivery", str(delivery)])
        doc = json.loads(capsys.readouterr().out)
        assert doc["report"]["deliveryTotals"]["adserverImps"] == 8
        assert doc["report"]["reconciliation"]["discrepancyVsAdserver"] == 75.0

    def test_db_persists(self, capture_file, tmp_path, capsys):
        db_path = tmp_path / "audit.db"
        main(["scan", "-i", str(capture_file), "--db", str(db_path)])
        capsys.readouterr()

        async def read():
            repo = await SqliteRepository.create(db_path)
            try:
                return await repo.list_for_scan("cap-1", "news.example"), await repo.get_verdict("cap-1", "news.example")
            finally:
                await repo.close()

        rows, verdict = asyncio.run(read())
        assert "ads.example.com" in {r.vendor_host for r in rows}
        assert verdict.status == "WARN"

    def test_overflowing_timestamp_completes(self, tmp_path, capsys):
        capture = _capture()
        capture["requests"].append({"url": "https://ads.example.com/imp?crid=c1&cb=3", "resourceType": "image", "timestamp": 1e300})
        capture["requests"].append({"url": "https://ads.example.com/imp?crid=c1&cb=4", "resourceType": "image", "timestamp": "1e400"})
        path = tmp_path / "capture.json"
        path.write_text(json.dumps(capture), encoding="utf-8")
        main(["scan", "-i", str(path)])
        doc = json.loads(capsys.readouterr().out)
        beacons = [r for r in doc["vendorAggregates"] if r["vendorHost"] == "ads.example.com"]
        assert beacons[0]["impressions"] == 4
        assert beacons[0]["lastSeen"] == ""

    def test_missing_input(self, tmp_path, capsys):
        assert _run(["scan", "-i", str(tmp_path / "missing.json")]) == 1
        assert "Error: cannot read capture" in capsys.readouterr().err

    def test_no_publisher(self, tmp_path, capsys):
        path = tmp_path / "capture.json"
        path.write_text("{}", encoding="utf-8")
        assert _run(["scan", "-i", str(path)]) == 1
        assert "no publisher" in capsys.readouterr().err


# ── verdict command ─────────────────────────────────────────────────


class TestVerdictCommand:
    def test_json(self, evidence_file, capsys):
        main(["verdict", "--evidence", str(evidence_file)])
        doc = json.loads(capsys.readouterr().out)
        assert doc["verdict"] == "FAIL"
        assert doc["score"] == 100

    def test_evidence_not_ok(self, evidence_file, capsys):
        main(["verdict", "-e", str(evidence_file), "--no-evidence-ok"])
        doc = json.loads(capsys.readouterr().out)
        assert doc["verdict"] == "INSUFFICIENT_EVIDENCE"
        assert doc["score"] == 10

    def test_table(self, evidence_file, capsys):
        main(["verdict", "-e", str(evidence_file), "--format", "table"])
        out = capsys.readouterr().out
        assert "MONETIZED_INFLATION" in out
        assert "monetizedInflationSignals" in out

    def test_invalid_pack(self, tmp_path, capsys):
        path = tmp_path / "pack.json"
        path.write_text('{"summaryFlags": {}}', encoding="utf-8")
        assert _run(["verdict", "-e", str(path)]) == 1
        assert "Error: invalid evidence pack" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        assert _run(["verdict", "-e", str(tmp_path / "nope.json")]) == 1
        assert "cannot read evidence pack" in capsys.readouterr().err


# ── Entry point ─────────────────────────────────────────────────────


class TestMain:
    def test_keyboard_interrupt(self, evidence_file, monkeypatch, capsys):
        def interrupted(args):
            raise KeyboardInterrupt

        monkeypatch.setattr(cli, "cmd_verdict", interrupted)
        assert _run(["verdict", "-e", str(evidence_file)]) == 130
        assert "Interrupted." in capsys.readouterr().err

    def test_unexpected_error(self, evidence_file, monkeypatch, capsys):
        def broken(args):
            raise RuntimeError("kaput")

        monkeypatch.setattr(cli, "cmd_verdict", broken)
        assert _run(["verdict", "-e", str(evidence_file)]) == 1
        err = capsys.readouterr().err
        assert "Unexpected error: RuntimeError: kaput" in err
        assert "Traceback" not in err

    def test_verbose_prints_traceback(self, evidence_file, monkeypatch, capsys):
        def broken(args):
            raise RuntimeError("kaput")

        monkeypatch.setattr(cli, "cmd_verdict", broken)
        assert _run(["-v", "verdict", "-e", str(evidence_file)]) == 1
        assert "Traceback" in capsys.readouterr().err

    def test_version(self, capsys):
        assert _run(["--version"]) == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_command_required(self, capsys):
        assert _run([]) == 2

    def test_json_logs(self, evidence_file, capsys):
        main(["--json-logs", "verdict", "-e", str(evidence_file)])
        err_lines = [line for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
        events = [json.loads(line)["event"] for line in err_lines]
        assert "adaudit 0.1.0" in events
