# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""First Packet exception hierarchy.

All build errors inherit from FirstPacketError, allowing callers to catch
the base class for any failure or specific subclasses for targeted handling.

Cache misses and compliance violations are not exceptions: a miss is a
``None`` lookup result and a violation is a string recorded on BuildResults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from . import BuildResults


class FirstPacketError(Exception):
    """Base exception for all First Packet errors."""


class ConfigError(FirstPacketError):
    """Invalid orchestrator configuration value."""


class ScanError(FirstPacketError):
    """Static asset root missing or unreadable (fatal to the scan stage)."""


class ExtractionError(FirstPacketError):
    """Malformed CSS rule.  Recoverable: the rule is skipped."""


class CompressionError(FirstPacketError):
    """Unknown algorithm or out-of-range compression level."""


class StageError(FirstPacketError):
    """A pipeline stage failed after exhausting its retries."""

    def __init__(self, message: str, *, stage: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.stage = stage
        self.attempts = attempts


class StageTimeoutError(StageError):
    """A single stage attempt exceeded its timeout."""


class BuildError(FirstPacketError):
    """Build aborted.  Carries the partial, finalized results."""

    def __init__(self, message: str, *, results: BuildResults) -> None:
        super().__init__(message)
        self.results = results
