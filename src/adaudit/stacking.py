# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Ad-stacking geometry detector.

Pure module: takes iframe geometry snapshots captured by the browser layer
and flags hidden, tiny, offscreen and stacked (overlapping) placements.
Flags are non-exclusive; one iframe can be TINY, HIDDEN_OPACITY and
OFFSCREEN at once.  Pairwise overlap is O(n²), so callers pass only
ad-candidate iframes (``is_ad_candidate``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from .config import AuditConfig

logger = logging.getLogger("adaudit.stacking")

_AD_ID_HINTS = ("ad", "gpt", "dfp")
_AD_CLASS_HINTS = ("ad", "teads", "outbrain", "taboola")
_AD_SRC_HINTS = ("doubleclick", "googlesyndication", "googleadservices", "teads", "outbrain", "taboola")


class StackingFlag(StrEnum):
    TINY = "TINY"
    HIDDEN_OPACITY = "HIDDEN_OPACITY"
    HIDDEN_DISPLAY = "HIDDEN_DISPLAY"
    HIDDEN_VISIBILITY = "HIDDEN_VISIBILITY"
    NEGATIVE_ZINDEX = "NEGATIVE_ZINDEX"
    OFFSCREEN = "OFFSCREEN"
    STACKED = "STACKED"


_HIDDEN_FLAGS = frozenset({StackingFlag.HIDDEN_OPACITY, StackingFlag.HIDDEN_DISPLAY, StackingFlag.HIDDEN_VISIBILITY})


# ---------------------------------------------------------------------------
# Snapshot types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BBox:
    x: float
    y: float
    w: float
    h: float

    @property
    def left(self) -> float:
        return self.x

    @property
    def top(self) -> float:
        return self.y

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return max(self.w, 0.0) * max(self.h, 0.0)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True, slots=True)
class IframeCss:
    display: str = "block"
    visibility: str = "visible"
    opacity: float = 1.0
    z_index: int = 0

    def to_dict(self) -> dict:
        return {"display": self.display, "visibility": self.visibility, "opacity": self.opacity, "zIndex": self.z_index}


@dataclass(frozen=True, slots=True)
class Viewport:
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: dict | None) -> Viewport:
        if not data:
            return DEFAULT_VIEWPORT
        return cls(_num(data.get("width"), DEFAULT_VIEWPORT.width), _num(data.get("height"), DEFAULT_VIEWPORT.height))


# Browser default when the capture carries no viewport
DEFAULT_VIEWPORT = Viewport(1280, 720)


def _num(value: object, default: float = 0.0) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _z_index(value: object) -> int:
    # "auto" and other non-numeric values compute to 0
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, slots=True)
class IframeGeometrySnapshot:
    id: str
    bbox: BBox
    css: IframeCss = field(default_factory=IframeCss)
    src: str = ""
    class_name: str = ""

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> IframeGeometrySnapshot:
        """Accept ``{bbox, css}`` snapshots as well as browser ``{rect, style}`` payloads."""
        if "bbox" in data:
            box = data.get("bbox") or {}
            bbox = BBox(_num(box.get("x")), _num(box.get("y")), _num(box.get("w")), _num(box.get("h")))
        else:
            rect = data.get("rect") or {}
            x = _num(rect.get("x", rect.get("left")))
            y = _num(rect.get("y", rect.get("top")))
            bbox = BBox(x, y, _num(rect.get("width")), _num(rect.get("height")))
        style = data.get("css") or data.get("style") or {}
        css = IframeCss(
            display=str(style.get("display") or "block"),
            visibility=str(style.get("visibility") or "visible"),
            opacity=_num(style.get("opacity", 1), 1.0),
            z_index=_z_index(style.get("zIndex", style.get("z_index", 0))),
        )
        return cls(
            id=str(data.get("id") or f"iframe-{index}"),
            bbox=bbox,
            css=css,
            src=str(data.get("src") or ""),
            class_name=str(data.get("className") or data.get("class_name") or ""),
        )


def is_ad_candidate(snapshot: IframeGeometrySnapshot) -> bool:
    """Heuristic pre-filter on id, class and src."""
    ident = snapshot.id.lower()
    cls = snapshot.class_name.lower()
    return (
        any(h in ident for h in _AD_ID_HINTS)
        or any(h in cls for h in _AD_CLASS_HINTS)
        or any(h in snapshot.src for h in _AD_SRC_HINTS)
    )


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IframeFinding:
    finding_id: str
    iframe_id: str
    flags: tuple[StackingFlag, ...]
    bbox: BBox
    css: IframeCss
    src: str = ""

    def to_dict(self) -> dict:
        return {
            "findingId": self.finding_id,
            "iframeId": self.iframe_id,
            "reason": "|".join(self.flags),
            "flags": [f.value for f in self.flags],
            "bbox": self.bbox.to_dict(),
            "css": self.css.to_dict(),
            "src": self.src,
        }


@dataclass(frozen=True, slots=True)
class StackedPairFinding:
    finding_id: str
    iframe_id_1: str
    iframe_id_2: str
    overlap_ratio: float  # rounded to 2 dp
    bbox_1: BBox
    bbox_2: BBox

    def to_dict(self) -> dict:
        return {
            "findingId": self.finding_id,
            "iframeId1": self.iframe_id_1,
            "iframeId2": self.iframe_id_2,
            "reason": StackingFlag.STACKED.value,
            "overlapRatio": self.overlap_ratio,
            "bbox1": self.bbox_1.to_dict(),
            "bbox2": self.bbox_2.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class StackingFindings:
    stacked_pairs_count: int = 0
    hidden_iframes_count: int = 0
    tiny_iframes_count: int = 0
    offscreen_iframes_count: int = 0
    iframe_findings: tuple[IframeFinding, ...] = ()
    stacked_pairs: tuple[StackedPairFinding, ...] = ()
    max_overlap: dict[str, float] = field(default_factory=dict)  # iframe id -> largest overlap ratio

    @property
    def findings(self) -> list[IframeFinding | StackedPairFinding]:
        return [*self.iframe_findings, *self.stacked_pairs]

    def to_dict(self) -> dict:
        return {
            "stackedPairsCount": self.stacked_pairs_count,
            "hiddenIframesCount": self.hidden_iframes_count,
            "tinyIframesCount": self.tiny_iframes_count,
            "offscreenIframesCount": self.offscreen_iframes_count,
            "findings": [f.to_dict() for f in self.findings],
        }


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def overlap_ratio(a: BBox, b: BBox) -> float:
    """Intersection area over the smaller of the two areas (0 when disjoint)."""
    left = max(a.left, b.left)
    right = min(a.right, b.right)
    top = max(a.top, b.top)
    bottom = min(a.bottom, b.bottom)
    if left >= right or top >= bottom:
        return 0.0
    smaller = min(a.area, b.area)
    if smaller <= 0:
        return 0.0
    return (right - left) * (bottom - top) / smaller


def iframe_flags(snapshot: IframeGeometrySnapshot, viewport: Viewport, *, tiny_px: float = 2.0) -> tuple[StackingFlag, ...]:
    box, css = snapshot.bbox, snapshot.css
    flags: list[StackingFlag] = []
    if box.w <= tiny_px or box.h <= tiny_px:
        flags.append(StackingFlag.TINY)
    if css.opacity == 0:
        flags.append(StackingFlag.HIDDEN_OPACITY)
    if css.display == "none":
        flags.append(StackingFlag.HIDDEN_DISPLAY)
    if css.visibility == "hidden":
        flags.append(StackingFlag.HIDDEN_VISIBILITY)
    if css.z_index < 0:
        flags.append(StackingFlag.NEGATIVE_ZINDEX)
    if box.right < 0 or box.bottom < 0 or box.left > viewport.width or box.top > viewport.height:
        flags.append(StackingFlag.OFFSCREEN)
    return tuple(flags)


def detect(
    snapshots: list[IframeGeometrySnapshot],
    viewport: Viewport,
    config: AuditConfig | None = None,
) -> StackingFindings:
    """Flag every snapshot and every qualifying overlapping pair."""
    cfg = config or AuditConfig()
    hidden = tiny = offscreen = 0
    iframe_findings: list[IframeFinding] = []
    for snap in snapshots:
        flags = iframe_flags(snap, viewport, tiny_px=cfg.tiny_frame_px)
        if not flags:
            continue
        tiny += StackingFlag.TINY in flags
        hidden += any(f in _HIDDEN_FLAGS for f in flags)
        offscreen += StackingFlag.OFFSCREEN in flags
        iframe_findings.append(
            IframeFinding(
                finding_id=f"iframe:{snap.id}",
                iframe_id=snap.id,
                flags=flags,
                bbox=snap.bbox,
                css=snap.css,
                src=snap.src,
            )
        )

    pairs: list[StackedPairFinding] = []
    max_overlap: dict[str, float] = {}
    for i, a in enumerate(snapshots):
        if a.bbox.area < cfg.min_overlap_area:
            continue
        for b in snapshots[i + 1 :]:
            if b.bbox.area < cfg.min_overlap_area:
                continue
            ratio = overlap_ratio(a.bbox, b.bbox)
            if ratio <= 0:
                continue
            max_overlap[a.id] = max(max_overlap.get(a.id, 0.0), ratio)
            max_overlap[b.id] = max(max_overlap.get(b.id, 0.0), ratio)
            if ratio >= cfg.stack_overlap_threshold:
                pairs.append(
                    StackedPairFinding(
                        finding_id=f"stack:{a.id}:{b.id}",
                        iframe_id_1=a.id,
                        iframe_id_2=b.id,
                        overlap_ratio=round(ratio, 2),
                        bbox_1=a.bbox,
                        bbox_2=b.bbox,
                    )
                )

    if iframe_findings or pairs:
        logger.debug(
            "stacking pass: %d iframes, %d flagged, %d stacked pairs",
            len(snapshots),
            len(iframe_findings),
            len(pairs),
        )
    return StackingFindings(
        stacked_pairs_count=len(pairs),
        hidden_iframes_count=hidden,
        tiny_iframes_count=tiny,
        offscreen_iframes_count=offscreen,
        iframe_findings=tuple(iframe_findings),
        stacked_pairs=tuple(pairs),
        max_overlap=max_overlap,
    )
