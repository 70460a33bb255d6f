# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""adaudit CLI: replay a recorded capture, evaluate an evidence pack.

Usage:
    python -m adaudit.cli scan --input capture.json [--scan-id ID] [--publisher ID] [--config FILE]
                               [--delivery FILE] [--db PATH] [--format json|table] [-o PATH]
    python -m adaudit.cli verdict --evidence pack.json [--no-evidence-ok] [--format json|table]

A capture is the JSON the browser layer records for one page load::

    {
      "scanId": "...", "url": "https://publisher.example/article",
      "requests":    [{"url", "method", "resourceType", "frameUrl", "timestamp"}],
      "responses":   [{"url", "resourceType", "timestamp", "status"}],
      "navigations": [{"url", "timestamp"}],
      "clicks":      [{"timestamp", "x", "y", "tagName", "id", "className", "href", "context"}],
      "gptEvents":   [{"type", "timestamp", "slotId", "adUnitPath", "creativeId", ...}],
      "viewability": [{"type": "VIEWABILITY", "source": "intersection", ...}],
      "iframes":     [{"id", "src", "bbox" | "rect", "css" | "style"}],
      "viewport":    {"width", "height"},
      "deliveryTotals": "<JSON object or two-line CSV>"
    }

Every list is optional.  Entries are replayed in timestamp order.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from urllib.parse import urlsplit

from . import RawRequestEvent, __version__, parse_timestamp
from .aggregator import VendorAggregate, aggregate, build_evidence_payload
from .config import AuditConfig, load_config
from .errors import AdAuditError, CaptureFormatError
from .evidence import build_evidence_pack
from .scan import ScanReport, ScanSession
from .stacking import Viewport
from .summary import parse_delivery_totals
from .verdict import VerdictResult, evaluate

logger = logging.getLogger("adaudit.cli")

_LIST_SECTIONS = ("requests", "responses", "navigations", "clicks", "gptEvents", "viewability", "iframes")

# Tie-break for entries sharing a timestamp: a click must be seen before the redirect it caused
_REPLAY_ORDER = {"clicks": 0, "requests": 1, "responses": 2, "navigations": 3, "gptEvents": 4, "viewability": 5}


def _require_cli_deps() -> None:
    """Check that CLI optional dependencies are installed."""
    try:
        import yaml  # noqa: F401
        from tabulate import tabulate  # noqa: F401
    except ImportError as e:
        print(
            f"Missing CLI dependency: {e.name}\nInstall with: pip install adaudit[cli]",
            file=sys.stderr,
        )
        sys.exit(1)


# ---------------------------------------------------------------------------
# Capture replay
# ---------------------------------------------------------------------------


def load_capture(path: str | Path) -> dict:
    """Read and shape-check a capture file.

    Raises:
        CaptureFormatError: If the file is unreadable, not JSON, or a section has the wrong type.
    """
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise CaptureFormatError(f"cannot read capture {p}: {e}") from e
    except ValueError as e:
        raise CaptureFormatError(f"capture {p} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CaptureFormatError(f"capture {p} must be a JSON object, got {type(data).__name__}")
    for section in _LIST_SECTIONS:
        if not isinstance(data.get(section, []), list):
            raise CaptureFormatError(f"capture section {section!r} must be a list")
    viewport = data.get("viewport")
    if viewport is not None and not isinstance(viewport, dict):
        raise CaptureFormatError("capture section 'viewport' must be an object")
    return data


def _ts(entry: dict) -> float:
    return parse_timestamp(entry.get("timestamp", entry.get("ts")))


def _raw_request(entry: dict, page_url: str) -> RawRequestEvent | None:
    try:
        return RawRequestEvent.from_url(
            entry.get("url", ""),
            method=entry.get("method") or "GET",
            resource_type=entry.get("resourceType"),
            timestamp=_ts(entry),
            frame_url=entry.get("frameUrl") or "",
            page_url=entry.get("pageUrl") or page_url,
        )
    except ValueError:
        logger.debug("dropping capture request without url: %r", entry)
        return None


def replay_capture(capture: dict, session: ScanSession, *, delivery_text: str | None = None) -> ScanReport:
    """Feed every capture entry into *session* in timestamp order and finalize it."""
    timeline: list[tuple[float, int, int, str, dict]] = []
    for section, order in _REPLAY_ORDER.items():
        for index, entry in enumerate(capture.get(section) or []):
            if not isinstance(entry, dict):
                logger.debug("dropping non-object %s entry at %d", section, index)
                continue
            timeline.append((_ts(entry), order, index, section, entry))
    timeline.sort(key=lambda item: item[:3])

    page_url = session.page_url
    for ts, _order, _index, section, entry in timeline:
        if section == "clicks":
            session.record_click(entry)
        elif section == "requests":
            if (raw := _raw_request(entry, page_url)) is not None:
                session.record_request(raw)
        elif section == "responses":
            if (raw := _raw_request(entry, page_url)) is not None:
                session.record_response(raw, entry.get("status"))
        elif section == "navigations":
            session.record_navigation(entry.get("url") or "", ts)
        elif section == "gptEvents":
            session.record_gpt_event(entry)
        else:
            session.record_viewability(entry)

    if delivery_text is None:
        raw_delivery = capture.get("deliveryTotals")
        delivery_text = json.dumps(raw_delivery) if isinstance(raw_delivery, dict) else raw_delivery
    return session.finalize(
        capture.get("iframes") or [],
        Viewport.from_dict(capture.get("viewport")),
        delivery=parse_delivery_totals(delivery_text),
    )


def _publisher_from_url(url: str) -> str:
    host = urlsplit(url).hostname or ""
    return host.removeprefix("www.")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _emit(text: str, output: str | None) -> None:
    if not output:
        print(text)
        return
    p = Path(output)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text + "\n", encoding="utf-8")
    print(f"Saved to {p}", file=sys.stderr)


def _verdict_tables(result: VerdictResult) -> list[str]:
    from tabulate import tabulate

    head = tabulate(
        [
            ["Verdict", result.verdict.value],
            ["Score", result.score],
            ["Confidence", result.confidence],
            ["Classification", result.primary.value],
            ["Rationale", result.rationale],
        ],
        tablefmt="simple",
    )
    trace = tabulate(
        [[e.rule_id, "pass" if e.passed else "fail", e.notes] for e in result.rule_trace],
        headers=["Gate", "Result", "Notes"],
        tablefmt="simple",
    )
    parts = [head, trace]
    if result.top_signals:
        parts.append(
            tabulate(
                [[s.signal_id, s.severity.value, s.count, len(s.evidence), s.summary] for s in result.top_signals],
                headers=["Signal", "Severity", "Count", "Refs", "Summary"],
                tablefmt="simple",
            )
        )
    return parts


def _scan_tables(report: ScanReport, rows: list[VendorAggregate], result: VerdictResult) -> str:
    from tabulate import tabulate

    s = report.summary
    summary = tabulate(
        [
            ["Total impressions", s.total_impressions],
            ["Served impressions", s.served_impressions],
            ["Verified impressions", s.verified_impressions],
            ["Viewable impressions", s.viewable_impressions],
            ["Clicks", s.clicks],
            ["Discrepancy %", "-" if s.discrepancy_percent is None else s.discrepancy_percent],
            ["Suspect clicks", s.diagnostic.suspect_clicks],
            ["Stacked pairs", report.stacking.stacked_pairs_count],
            ["Hidden iframes", report.stacking.hidden_iframes_count],
        ],
        headers=["Scan", report.scan_id],
        tablefmt="simple",
    )
    vendors = tabulate(
        [
            [r.vendor_host, r.ad_slot_id, r.impressions, r.duplicate_count, f"{r.duplication_rate:.2f}", r.burst_events_1s]
            for r in rows
        ],
        headers=["Vendor host", "Ad slot", "Impr", "Dup", "Dup rate", "Burst 1s"],
        tablefmt="simple",
    )
    parts = [summary, vendors]
    if report.flags:
        parts.append(
            tabulate(
                [[f.creative_id, f.placement, f.impressions, f.viewable, f.message] for f in report.flags],
                headers=["Creative", "Placement", "Impr", "Viewable", "Flag"],
                tablefmt="simple",
            )
        )
    parts.extend(_verdict_tables(result))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _persist(db_path: str, scan_id: str, publisher_id: str, rows: list[VendorAggregate], result: VerdictResult) -> None:
    from .repository import VerdictRecord
    from .repository_sqlite import SqliteRepository

    repo = await SqliteRepository.create(db_path)
    try:
        await repo.replace_for_scan(scan_id, publisher_id, rows)
        await repo.record_verdict(
            scan_id,
            publisher_id,
            VerdictRecord(status=result.verdict.value, rationale=result.rationale, score=result.score),
        )
    finally:
        await repo.close()


def cmd_scan(args: argparse.Namespace) -> None:
    """Replay a capture, aggregate vendors, build evidence and evaluate the verdict."""
    if args.format == "table" or args.config:
        _require_cli_deps()
    config = load_config(args.config) if args.config else AuditConfig()
    capture = load_capture(args.input)

    page_url = str(capture.get("url") or "")
    scan_id = args.scan_id or str(capture.get("scanId") or "") or uuid.uuid4().hex[:12]
    publisher_id = args.publisher or str(capture.get("publisher") or "") or _publisher_from_url(page_url)
    if not publisher_id:
        raise CaptureFormatError("no publisher: pass --publisher or record a page url in the capture")

    delivery_text = None
    if args.delivery:
        try:
            delivery_text = Path(args.delivery).read_text(encoding="utf-8")
        except OSError as e:
            raise CaptureFormatError(f"cannot read delivery totals {args.delivery}: {e}") from e

    session = ScanSession(scan_id, page_url, config)
    report = replay_capture(capture, session, delivery_text=delivery_text)

    rows = aggregate(
        report.raw_events,
        scan_id,
        publisher_id,
        stacking_suspected=report.stacking.stacked_pairs_count > 0,
    )
    pack = build_evidence_pack(report, rows, scan_id, page_url)
    result = evaluate(pack)

    if args.db:
        asyncio.run(_persist(args.db, scan_id, publisher_id, rows, result))

    if args.format == "table":
        _emit(_scan_tables(report, rows, result), args.output)
        return
    document = {
        "report": report.to_dict(),
        "vendorAggregates": [r.to_dict() for r in rows],
        "affectedVendors": build_evidence_payload(scan_id, publisher_id, rows),
        "evidencePack": pack.to_dict(),
        "verdict": result.to_dict(),
    }
    _emit(json.dumps(document, ensure_ascii=False, indent=2), args.output)


def cmd_verdict(args: argparse.Namespace) -> None:
    """Evaluate a stand-alone evidence pack."""
    if args.format == "table":
        _require_cli_deps()
    path = Path(args.evidence)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise AdAuditError(f"cannot read evidence pack {path}: {e}") from e

    result = evaluate(text, evidence_ok=args.evidence_ok)
    if args.format == "table":
        _emit("\n\n".join(_verdict_tables(result)), args.output)
    else:
        _emit(json.dumps(result.to_dict(), ensure_ascii=False, indent=2), args.output)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ad impression forensic audit",
        prog="python -m adaudit.cli",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit log lines as JSON")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _scan_epilog = """\
examples:
  %(prog)s --input capture.json                        JSON report to stdout
  %(prog)s --input capture.json --format table         Terminal tables
  %(prog)s --input capture.json --db ~/.adaudit/a.db   Persist vendor aggregates
"""
    p_scan = subparsers.add_parser(
        "scan",
        help="Replay a recorded capture and audit it",
        epilog=_scan_epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_scan.add_argument("--input", "-i", required=True, metavar="FILE", help="Capture JSON file")
    p_scan.add_argument("--scan-id", type=str, help="Scan id (default: capture scanId or random)")
    p_scan.add_argument("--publisher", type=str, help="Publisher id (default: page hostname)")
    p_scan.add_argument("--config", type=str, metavar="FILE", help="YAML file of audit tunables")
    p_scan.add_argument("--delivery", type=str, metavar="FILE", help="Delivery totals (JSON or CSV)")
    p_scan.add_argument("--db", type=str, metavar="PATH", help="SQLite database for vendor aggregates")
    p_scan.add_argument("--format", choices=["json", "table"], default="json")
    p_scan.add_argument("-o", "--output", type=str, metavar="PATH", help="Write to file instead of stdout")

    p_verdict = subparsers.add_parser("verdict", help="Evaluate an evidence pack")
    p_verdict.add_argument("--evidence", "-e", required=True, metavar="FILE", help="Evidence pack JSON file")
    p_verdict.add_argument(
        "--evidence-ok",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Whether upstream evidence collection succeeded (default: yes)",
    )
    p_verdict.add_argument("--format", choices=["json", "table"], default="json")
    p_verdict.add_argument("-o", "--output", type=str, metavar="PATH", help="Write to file instead of stdout")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    from .logging_config import configure as configure_logging

    configure_logging(json_output=args.json_logs, level="DEBUG" if args.verbose else "INFO")
    logger.info("adaudit %s", __version__)

    commands = {"scan": cmd_scan, "verdict": cmd_verdict}
    try:
        commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except AdAuditError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {type(e).__name__}: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
