# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Audit tunables.

Every threshold the pipeline uses lives on one immutable ``AuditConfig``
so a scan's numbers can be reproduced from its config alone.  YAML
loading needs the ``cli`` extra (PyYAML).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

DEFAULT_DEDUPE_TTL_MS = 15_000
DEFAULT_CORRELATION_WINDOW_MS = 5_000
DEFAULT_CLICK_WINDOW_MS = 1_500
DEFAULT_DISCREPANCY_THRESHOLD = 10.0


@dataclass(frozen=True, slots=True)
class AuditConfig:
    """Immutable configuration for one scan."""

    dedupe_ttl_ms: int = DEFAULT_DEDUPE_TTL_MS
    prune_threshold: int = 1_000  # ledger size that forces a prune
    prune_interval: int = 100  # prune every N counted insertions
    correlation_window_ms: int = DEFAULT_CORRELATION_WINDOW_MS
    click_window_ms: int = DEFAULT_CLICK_WINDOW_MS
    max_clicks: int = 20  # click ring buffer size
    response_match_ms: int = 100
    discrepancy_threshold: float = DEFAULT_DISCREPANCY_THRESHOLD  # percent
    stack_overlap_threshold: float = 0.30
    min_overlap_area: float = 2_000.0  # px²
    tiny_frame_px: float = 2.0

    def __post_init__(self) -> None:
        positive = ("dedupe_ttl_ms", "prune_threshold", "prune_interval", "max_clicks")
        for name in positive:
            value = getattr(self, name)
            if value <= 0:
                raise ConfigError(f"{name} must be > 0, got {value}")
        non_negative = (
            "correlation_window_ms",
            "click_window_ms",
            "response_match_ms",
            "discrepancy_threshold",
            "min_overlap_area",
            "tiny_frame_px",
        )
        for name in non_negative:
            value = getattr(self, name)
            if value < 0:
                raise ConfigError(f"{name} must be >= 0, got {value}")
        if not 0.0 < self.stack_overlap_threshold <= 1.0:
            raise ConfigError(f"stack_overlap_threshold must be in (0, 1], got {self.stack_overlap_threshold}")

    @classmethod
    def from_mapping(cls, data: dict) -> AuditConfig:
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def load_config(path: str | Path | None) -> AuditConfig:
    """Load an ``AuditConfig`` from a YAML file. ``None`` returns the defaults."""
    if path is None:
        return AuditConfig()

    import yaml

    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read config {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e

    if raw is None:
        return AuditConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"config {p} must be a mapping, got {type(raw).__name__}")
    # Accept an optional top-level "audit:" section
    section = raw.get("audit", raw) if set(raw) == {"audit"} else raw
    return AuditConfig.from_mapping(section)
