# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Gated, scored verdict over an evidence pack.

One deterministic function, ``evaluate``.  Four feature booleans feed an
additive score; three gates then bound the outcome:

- G1 (monetization): FAIL requires monetized inflation signals.
- G2 (evidence): without ``evidence_ok`` and at least one evidence
  reference the verdict is INSUFFICIENT_EVIDENCE and score <= 10.
- G3 (benign vendor): consent/auth instrumentation without monetized
  signals caps FAIL at WARN.

Every gate lands in ``rule_trace`` so a verdict can be explained after the
fact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .evidence import EvidencePack, EvidenceRef, GamImpression, SignalFlag, load_evidence_pack

logger = logging.getLogger("adaudit.verdict")

GAM_DUPLICATE_WINDOW_MS = 2_000
FAIL_SCORE = 70
WARN_SCORE = 35
INSUFFICIENT_SCORE_CAP = 10
INSUFFICIENT_CONFIDENCE_CAP = 40

_BENIGN_EVENT_PREFIXES = ("zephr_", "consent_", "auth_")
_BENIGN_MARKER = "zephr"


class Verdict(StrEnum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"
    INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"


class Classification(StrEnum):
    INSTRUMENTATION_DUPLICATION = "INSTRUMENTATION_DUPLICATION"
    MONETIZED_INFLATION = "MONETIZED_INFLATION"
    MIXED_RISK = "MIXED_RISK"
    UNKNOWN = "UNKNOWN"


class Severity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleTraceEntry:
    rule_id: str
    passed: bool
    notes: str = ""

    def to_dict(self) -> dict:
        return {"ruleId": self.rule_id, "passed": self.passed, "notes": self.notes}


@dataclass(frozen=True, slots=True)
class TopSignal:
    signal_id: str
    severity: Severity
    summary: str
    count: int
    evidence: tuple[EvidenceRef, ...] = ()

    def to_dict(self) -> dict:
        return {
            "signalId": self.signal_id,
            "severity": self.severity.value,
            "summary": self.summary,
            "count": self.count,
            "evidence": [ref.model_dump(by_alias=True) for ref in self.evidence],
        }


@dataclass(frozen=True, slots=True)
class Gates:
    g1_monetization: bool
    g2_evidence_ok: bool
    g3_benign_vendor: bool  # True when the benign-vendor gate does not block

    def to_dict(self) -> dict:
        return {
            "g1Monetization": self.g1_monetization,
            "g2EvidenceOk": self.g2_evidence_ok,
            "g3BenignVendor": self.g3_benign_vendor,
        }


@dataclass(frozen=True, slots=True)
class Features:
    monetized_inflation_signals: bool
    structural_abuse_signals: bool
    telemetry_manipulation_signals: bool
    analytics_amplifiers: bool
    benign_vendor_present: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def active_count(self) -> int:
        return sum(
            (
                self.monetized_inflation_signals,
                self.structural_abuse_signals,
                self.telemetry_manipulation_signals,
                self.analytics_amplifiers,
            )
        )

    def to_dict(self) -> dict:
        return {
            "monetizedInflationSignals": self.monetized_inflation_signals,
            "structuralAbuseSignals": self.structural_abuse_signals,
            "telemetryManipulationSignals": self.telemetry_manipulation_signals,
            "analyticsAmplifiers": self.analytics_amplifiers,
            "benignVendorPresent": self.benign_vendor_present,
            "counts": dict(self.counts),
        }


@dataclass(frozen=True, slots=True)
class VerdictResult:
    verdict: Verdict
    score: int
    confidence: int
    primary: Classification
    rationale: str
    rule_trace: tuple[RuleTraceEntry, ...]
    top_signals: tuple[TopSignal, ...]
    gates: Gates
    features: Features

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "score": self.score,
            "confidence": self.confidence,
            "classification": {
                "primary": self.primary.value,
                "rationale": self.rationale,
                "ruleTrace": [e.to_dict() for e in self.rule_trace],
            },
            "topSignals": [s.to_dict() for s in self.top_signals],
            "gates": self.gates.to_dict(),
            "features": self.features.to_dict(),
        }


# ---------------------------------------------------------------------------
# Feature extraction
# ---------------------------------------------------------------------------


def _epoch_ms(ts: str | float | None) -> float | None:
    if ts is None or ts == "" or ts == 0:
        return None
    if isinstance(ts, (int, float)):
        return float(ts)
    try:
        return datetime.fromisoformat(ts).timestamp() * 1000
    except ValueError:
        return None


def count_gam_duplicate_impressions(impressions: list[GamImpression], window_ms: int = GAM_DUPLICATE_WINDOW_MS) -> int:
    """Impressions landing within *window_ms* of an earlier impression of the same slot."""
    seen: dict[str, list[float]] = {}
    duplicates = 0
    for imp in impressions:
        ts = _epoch_ms(imp.ts)
        if not imp.slot_id or ts is None:
            continue
        previous = seen.setdefault(imp.slot_id, [])
        if any(abs(t - ts) <= window_ms for t in previous):
            duplicates += 1
        previous.append(ts)
    return duplicates


def benign_vendor_present(pack: EvidencePack) -> bool:
    """Consent/auth instrumentation (GA4 event names or sources, request initiators)."""
    for event in pack.analytics.ga4.events:
        name = event.name or ""
        if name.startswith(_BENIGN_EVENT_PREFIXES) or _BENIGN_MARKER in (event.source or ""):
            return True
    return any(
        isinstance(r.initiator, str) and _BENIGN_MARKER in r.initiator for r in pack.network.requests
    )


def extract_features(pack: EvidencePack) -> Features:
    flags = pack.summary_flags
    counts = {name: flag.count for name, flag in flags.flags().items()}
    gam = pack.ads.gam
    gam_duplicates = count_gam_duplicate_impressions(gam.impressions)
    counts["gamDuplicateImpressions"] = gam_duplicates

    monetized = (
        counts["duplicateAdImpression"] >= 2
        or gam_duplicates >= 2
        or (counts["autoRefreshInflation"] >= 1 and bool(gam.requests))
    )
    structural = (
        counts["hiddenTinyFrames"] >= 5
        or counts["pixelStuffing1x1"] >= 3
        or counts["adStacking"] >= 10
        or any(f.overlapped_pct >= 0.6 for f in pack.dom.iframes)
    )
    telemetry = counts["phantomScroll"] >= 1 or counts["sessionInflation"] >= 1
    amplifiers = (
        counts["multipleGa4Ids"] >= 1 or counts["multipleGtmContainers"] >= 1 or counts["multipleGa4PageView"] >= 1
    )
    return Features(
        monetized_inflation_signals=monetized,
        structural_abuse_signals=structural,
        telemetry_manipulation_signals=telemetry,
        analytics_amplifiers=amplifiers,
        benign_vendor_present=benign_vendor_present(pack),
        counts=counts,
    )


def score_features(features: Features) -> int:
    c = features.counts
    score = 0
    if features.monetized_inflation_signals:
        score += 45
        if c["duplicateAdImpression"] >= 10:
            score += 10
        if c["autoRefreshInflation"] >= 2:
            score += 10
    if features.structural_abuse_signals:
        score += 35
        if c["adStacking"] >= 25:
            score += 10
        if c["hiddenTinyFrames"] >= 20:
            score += 10
    if features.telemetry_manipulation_signals:
        score += 15
    if features.analytics_amplifiers:
        score += 10
    return score


def classify_features(features: Features) -> Classification:
    monetized = features.monetized_inflation_signals
    structural = features.structural_abuse_signals
    instrumentation = (
        features.analytics_amplifiers or features.telemetry_manipulation_signals or features.benign_vendor_present
    )
    if not monetized and instrumentation:
        return Classification.INSTRUMENTATION_DUPLICATION
    if monetized and structural:
        return Classification.MONETIZED_INFLATION
    if monetized or structural:
        return Classification.MIXED_RISK
    return Classification.UNKNOWN


def _first_refs(*flags: SignalFlag) -> tuple[EvidenceRef, ...]:
    for flag in flags:
        if flag.evidence_refs:
            return tuple(flag.evidence_refs)
    return ()


def _top_signals(features: Features, pack: EvidencePack) -> tuple[TopSignal, ...]:
    sf, c = pack.summary_flags, features.counts
    signals: list[TopSignal] = []
    if features.monetized_inflation_signals:
        signals.append(
            TopSignal(
                "monetizedInflationSignals",
                Severity.HIGH,
                "Monetization-linked duplication/refresh",
                c["duplicateAdImpression"],
                _first_refs(sf.duplicate_ad_impression, sf.auto_refresh_inflation),
            )
        )
    if features.structural_abuse_signals:
        signals.append(
            TopSignal(
                "structuralAbuseSignals",
                Severity.HIGH,
                "Hidden/tiny frames or stacking",
                c["hiddenTinyFrames"] or c["adStacking"],
                _first_refs(sf.hidden_tiny_frames, sf.ad_stacking, sf.pixel_stuffing_1x1),
            )
        )
    if features.telemetry_manipulation_signals:
        signals.append(
            TopSignal(
                "telemetryManipulationSignals",
                Severity.MEDIUM,
                "Phantom scroll or session inflation",
                c["phantomScroll"] or c["sessionInflation"],
                _first_refs(sf.phantom_scroll, sf.session_inflation),
            )
        )
    if features.analytics_amplifiers:
        signals.append(
            TopSignal(
                "analyticsAmplifiers",
                Severity.LOW,
                "Multiple analytics IDs / pageviews",
                c["multipleGa4Ids"] + c["multipleGa4PageView"],
                _first_refs(sf.multiple_ga4_ids, sf.multiple_ga4_page_view, sf.multiple_gtm_containers),
            )
        )
    return tuple(signals)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(evidence: EvidencePack | dict | str | bytes, evidence_ok: bool = True) -> VerdictResult:
    """Score *evidence* and apply the three gates.

    Raises:
        EvidenceContractError: If *evidence* is not a structurally valid pack.
    """
    pack = load_evidence_pack(evidence)
    features = extract_features(pack)
    score = score_features(features)

    g1_allows_fail = features.monetized_inflation_signals
    g3_blocks_fail = features.benign_vendor_present and not features.monetized_inflation_signals
    g2_evidence = bool(evidence_ok) and pack.summary_flags.any_evidence_refs()

    if not g2_evidence:
        verdict = Verdict.INSUFFICIENT_EVIDENCE
        score = min(score, INSUFFICIENT_SCORE_CAP)
    elif score >= FAIL_SCORE and g1_allows_fail and not g3_blocks_fail:
        verdict = Verdict.FAIL
    elif score >= WARN_SCORE:
        verdict = Verdict.WARN
    else:
        verdict = Verdict.PASS

    confidence = min(95, 50 + 15 * features.active_count)
    if verdict is Verdict.INSUFFICIENT_EVIDENCE:
        confidence = min(confidence, INSUFFICIENT_CONFIDENCE_CAP)

    rule_trace = (
        RuleTraceEntry(
            "G1_Monetization",
            g1_allows_fail,
            "monetizedInflationSignals present" if g1_allows_fail else "FAIL capped",
        ),
        RuleTraceEntry("G2_EvidenceRefs", g2_evidence, "refs present" if g2_evidence else "missing refs"),
        RuleTraceEntry(
            "G3_BenignVendor",
            not g3_blocks_fail,
            "benign vendor caps severity" if g3_blocks_fail else "not benign",
        ),
    )

    rationale = (
        f"Score {score}; monetized={_bool_text(features.monetized_inflation_signals)}; "
        f"structural={_bool_text(features.structural_abuse_signals)}; "
        f"telemetry={_bool_text(features.telemetry_manipulation_signals)}; "
        f"amplifiers={_bool_text(features.analytics_amplifiers)}"
    )

    result = VerdictResult(
        verdict=verdict,
        score=score,
        confidence=confidence,
        primary=classify_features(features),
        rationale=rationale,
        rule_trace=rule_trace,
        top_signals=_top_signals(features, pack),
        gates=Gates(g1_allows_fail, g2_evidence, not g3_blocks_fail),
        features=features,
    )
    logger.info(
        "verdict run_id=%s verdict=%s score=%d confidence=%d primary=%s",
        pack.run_id,
        result.verdict,
        result.score,
        result.confidence,
        result.primary,
    )
    return result


def _bool_text(value: bool) -> str:
    return "true" if value else "false"
