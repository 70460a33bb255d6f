# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Evidence pack contract consumed by the verdict engine.

The pack is camelCase JSON on the wire; models accept both the camelCase
aliases and the snake_case field names, and keep unknown keys so packs
produced by newer scanners still load.  ``runId`` is the one hard
requirement: a pack without it is a caller contract violation.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .aggregator import VendorAggregate, iso_ms
from .errors import EvidenceContractError
from .stacking import StackedPairFinding, StackingFlag

if TYPE_CHECKING:
    from .scan import ScanReport

EvidenceType = Literal["network", "dom", "analytics", "screenshot", "log", "ads"]


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Summary flags
# ---------------------------------------------------------------------------


class EvidenceRef(_Model):
    """Pointer into the pack (or the scan report) that justifies a signal."""

    type: EvidenceType
    id: str
    pointer: str


class SignalFlag(_Model):
    count: int = 0
    ids: list[str] | None = None
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)

    @field_validator("count", mode="before")
    @classmethod
    def _null_count(cls, v: Any) -> Any:
        return 0 if v is None else v


class SummaryFlags(_Model):
    duplicate_ad_impression: SignalFlag = Field(default_factory=SignalFlag, alias="duplicateAdImpression")
    auto_refresh_inflation: SignalFlag = Field(default_factory=SignalFlag, alias="autoRefreshInflation")
    phantom_scroll: SignalFlag = Field(default_factory=SignalFlag, alias="phantomScroll")
    multiple_ga4_ids: SignalFlag = Field(default_factory=SignalFlag, alias="multipleGa4Ids")
    multiple_gtm_containers: SignalFlag = Field(default_factory=SignalFlag, alias="multipleGtmContainers")
    pixel_stuffing_1x1: SignalFlag = Field(default_factory=SignalFlag, alias="pixelStuffing1x1")
    hidden_tiny_frames: SignalFlag = Field(default_factory=SignalFlag, alias="hiddenTinyFrames")
    ad_stacking: SignalFlag = Field(default_factory=SignalFlag, alias="adStacking")
    multiple_ga4_page_view: SignalFlag = Field(default_factory=SignalFlag, alias="multipleGa4PageView")
    session_inflation: SignalFlag = Field(default_factory=SignalFlag, alias="sessionInflation")

    def flags(self) -> dict[str, SignalFlag]:
        """Flag name (camelCase) -> flag, in declaration order."""
        return {info.alias or name: getattr(self, name) for name, info in type(self).model_fields.items()}

    def any_evidence_refs(self) -> bool:
        return any(flag.evidence_refs for flag in self.flags().values())


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class GamImpression(_Model):
    slot_id: str | None = None
    ts: str | float | None = None  # ISO-8601 string or epoch ms
    evidence_ref: EvidenceRef | None = None


class GamEvidence(_Model):
    impressions: list[GamImpression] = Field(default_factory=list)
    requests: list[Any] = Field(default_factory=list)


class AdsEvidence(_Model):
    gam: GamEvidence = Field(default_factory=GamEvidence)


class IframeEvidence(_Model):
    src: str | None = None
    width: float | None = None
    height: float | None = None
    css: dict[str, Any] = Field(default_factory=dict)
    bbox: dict[str, Any] = Field(default_factory=dict)
    overlapped_pct: float = 0.0
    evidence_ref: EvidenceRef | None = None


class DomEvidence(_Model):
    iframes: list[IframeEvidence] = Field(default_factory=list)


class Ga4Event(_Model):
    name: str | None = None
    ts: str | float | None = None
    source: str | None = None
    evidence_ref: EvidenceRef | None = None


class Ga4Evidence(_Model):
    ids: list[str] = Field(default_factory=list)
    events: list[Ga4Event] = Field(default_factory=list)


class AnalyticsEvidence(_Model):
    ga4: Ga4Evidence = Field(default_factory=Ga4Evidence)


class NetworkRequestEvidence(_Model):
    url: str | None = None
    initiator: Any = None


class NetworkEvidence(_Model):
    requests: list[NetworkRequestEvidence] = Field(default_factory=list)


class EvidencePack(_Model):
    run_id: str = Field(min_length=1)
    target_url: str = ""
    scanned_at: str = ""
    summary_flags: SummaryFlags = Field(default_factory=SummaryFlags)
    analytics: AnalyticsEvidence = Field(default_factory=AnalyticsEvidence)
    ads: AdsEvidence = Field(default_factory=AdsEvidence)
    dom: DomEvidence = Field(default_factory=DomEvidence)
    network: NetworkEvidence = Field(default_factory=NetworkEvidence)
    screenshots: Any = None

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def load_evidence_pack(data: EvidencePack | dict | str | bytes) -> EvidencePack:
    """Validate *data* (mapping or JSON text) into an ``EvidencePack``.

    Raises:
        EvidenceContractError: If the pack is structurally invalid (e.g. no ``runId``).
    """
    if isinstance(data, EvidencePack):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return EvidencePack.model_validate_json(data)
        return EvidencePack.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise EvidenceContractError(f"invalid evidence pack: {first.get('msg', e)}", field=field) from e


# ---------------------------------------------------------------------------
# Scan report -> evidence pack
# ---------------------------------------------------------------------------

_HIDDEN_OR_TINY = frozenset(
    {
        StackingFlag.TINY,
        StackingFlag.HIDDEN_OPACITY,
        StackingFlag.HIDDEN_DISPLAY,
        StackingFlag.HIDDEN_VISIBILITY,
    }
)


def _ref(kind: EvidenceType, ref_id: str, pointer: str) -> EvidenceRef:
    return EvidenceRef(type=kind, id=ref_id, pointer=pointer)


def build_evidence_pack(
    report: ScanReport,
    aggregates: list[VendorAggregate],
    run_id: str,
    target_url: str,
    *,
    scanned_at: datetime | None = None,
) -> EvidencePack:
    """Derive the verdict engine's evidence pack from a finished scan."""
    if not run_id:
        raise EvidenceContractError("run_id is required to build an evidence pack", field="runId")

    stacking = report.stacking
    findings = stacking.findings

    dup_refs = [
        _ref("ads", f"vendor:{a.vendor_host}:{a.ad_slot_id}", f"vendorAggregates[{i}]")
        for i, a in enumerate(aggregates)
        if a.duplicate_count > 0
    ]
    hidden_tiny_refs: list[EvidenceRef] = []
    pixel_refs: list[EvidenceRef] = []
    stack_refs: list[EvidenceRef] = []
    for i, finding in enumerate(findings):
        pointer = f"adStackingFindings.findings[{i}]"
        if isinstance(finding, StackedPairFinding):
            stack_refs.append(_ref("dom", finding.finding_id, pointer))
            continue
        if any(f in _HIDDEN_OR_TINY for f in finding.flags):
            hidden_tiny_refs.append(_ref("dom", finding.finding_id, pointer))
        if StackingFlag.TINY in finding.flags and finding.bbox.w <= 1 and finding.bbox.h <= 1:
            pixel_refs.append(_ref("dom", finding.finding_id, pointer))

    flags = SummaryFlags(
        duplicate_ad_impression=SignalFlag(count=sum(a.duplicate_count for a in aggregates), evidence_refs=dup_refs),
        hidden_tiny_frames=SignalFlag(count=len(hidden_tiny_refs), evidence_refs=hidden_tiny_refs),
        pixel_stuffing_1x1=SignalFlag(count=len(pixel_refs), evidence_refs=pixel_refs),
        ad_stacking=SignalFlag(count=stacking.stacked_pairs_count, evidence_refs=stack_refs),
    )

    impressions = [
        GamImpression(
            slot_id=r.slot_id or r.ad_unit_path,
            ts=iso_ms(r.ts),
            evidence_ref=_ref("ads", f"render-{i}", f"ads.gam.impressions[{i}]"),
        )
        for i, r in enumerate(rec for rec in report.renders if not rec.is_empty)
    ]
    requests = [{"url": g.url, "slotId": g.slot_id, "ts": iso_ms(g.ts)} for g in report.gam_requests]

    iframes = [
        IframeEvidence(
            src=snap.src,
            width=snap.bbox.w,
            height=snap.bbox.h,
            css=snap.css.to_dict(),
            bbox=snap.bbox.to_dict(),
            overlapped_pct=round(stacking.max_overlap.get(snap.id, 0.0), 2),
            evidence_ref=_ref("dom", f"iframe:{snap.id}", f"dom.iframes[{i}]"),
        )
        for i, snap in enumerate(report.iframes)
    ]

    when = scanned_at or datetime.now(UTC)
    return EvidencePack(
        run_id=run_id,
        target_url=target_url,
        scanned_at=when.isoformat(timespec="seconds").replace("+00:00", "Z"),
        summary_flags=flags,
        ads=AdsEvidence(gam=GamEvidence(impressions=impressions, requests=requests)),
        dom=DomEvidence(iframes=iframes),
    )


def dump_evidence_pack(pack: EvidencePack, *, indent: int | None = 2) -> str:
    return json.dumps(pack.to_dict(), indent=indent, ensure_ascii=False)
