# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""First Packet: server-side build pipeline for the 14KB first round trip.

Rewrites static assets and templates so the first network packet carries
enough critical content to paint:
- catalog: discovered static assets (path, size, hash, critical flag)
- bundles: named asset groups, critical ones held under a byte budget
- results: one BuildResults record per orchestrator run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

__version__ = "1.0.0"

# TCP initial congestion window (10 segments) minus headers.
MAX_FIRST_PACKET_SIZE = 14336
MAX_CRITICAL_CSS = 8192
DEFAULT_CHUNK_SIZE = 32 * 1024


class AssetType(StrEnum):
    """Asset classification by file extension."""

    CSS = "css"
    JS = "js"
    IMAGE = "image"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class Asset:
    """A single static asset recorded by a catalog scan."""

    path: str  # relative to the static root, '/' separated
    size: int
    type: AssetType
    critical: bool
    content_hash: str  # sha256 hex
    last_modified: float  # st_mtime
    dependencies: tuple[str, ...] = ()

    @property
    def short_hash(self) -> str:
        return self.content_hash[:8]


@dataclass(frozen=True, slots=True)
class Bundle:
    """A named group of assets slated for combined delivery.

    ``assets`` holds the catalog's Asset objects by reference.
    ``compressed_size`` is what the critical budget is checked against.
    """

    name: str  # "critical.css", "app-0.js", "lazy-images", ...
    type: AssetType
    assets: tuple[Asset, ...]
    critical: bool
    uncompressed_size: int
    compressed_size: int
    content_hash: str
    load_priority: int
    created_at: datetime
    content: bytes = field(default=b"", repr=False, compare=False)

    @property
    def writable(self) -> bool:
        """Images are accounted for but never concatenated into a file."""
        return self.type in (AssetType.CSS, AssetType.JS)

    def filename(self, cache_busting: bool = True) -> str:
        if not cache_busting or "." not in self.name:
            return self.name
        stem, _, ext = self.name.rpartition(".")
        return f"{stem}.{self.content_hash[:8]}.{ext}"


@dataclass(frozen=True, slots=True)
class BuildResults:
    """Outcome of one orchestrator run.  Immutable once published."""

    success: bool
    start_time: datetime
    end_time: datetime | None = None
    total_files: int = 0
    optimized_files: int = 0
    compliance_violations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    size_savings: int = 0
    compliance_rate: float = 0.0
    stage_timings: dict[str, float] = field(default_factory=dict, hash=False, compare=False)
    build_id: str = ""

    @property
    def duration(self) -> float:
        """Build wall time in seconds (0.0 while unfinished)."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "build_id": self.build_id,
            "success": self.success,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_s": round(self.duration, 3),
            "total_files": self.total_files,
            "optimized_files": self.optimized_files,
            "compliance_violations": list(self.compliance_violations),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "size_savings": self.size_savings,
            "compliance_rate": self.compliance_rate,
            "stage_timings": dict(self.stage_timings),
        }
