# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""adaudit exception hierarchy.

All adaudit-specific errors inherit from AdAuditError, allowing callers
to catch the base class for any audit failure or specific subclasses
for targeted handling.  Malformed individual records are never raised;
they are dropped where they are read.
"""

from __future__ import annotations


class AdAuditError(Exception):
    """Base exception for all adaudit errors."""


class EvidenceContractError(AdAuditError):
    """Caller supplied structurally invalid evidence (e.g. missing scan identifiers)."""

    def __init__(self, message: str, *, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class ConfigError(AdAuditError):
    """Invalid audit tunables or unreadable config file."""


class CaptureFormatError(AdAuditError):
    """A recorded capture file could not be read."""
