# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import adaudit  # noqa: F401
except ImportError:
    raise ImportError("adaudit is not installed. Run: pip install -e '.[dev]'") from None

import logging

import pytest
import structlog


@pytest.fixture(autouse=True)
def _restore_logging():
    """CLI tests call configure(); put the root logger back afterwards."""
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    yield
    root.handlers = old_handlers
    root.setLevel(old_level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
