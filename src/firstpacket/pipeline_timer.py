# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pipeline stage timer for build timings and timeout diagnostics.

Stages of a parallel group overlap, so each stage is started and ended by
name rather than implicitly closing its predecessor.  The timer lives
outside the build's timeout scope and still produces a report after
cancellation.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(slots=True)
class StageRecord:
    name: str
    start_ns: int
    end_ns: int = 0

    def elapsed_ms(self, now_ns: int) -> float:
        end = self.end_ns or now_ns
        return round((end - self.start_ns) / 1e6, 1)


class PipelineTimer:
    """Track stage start/end for latency reporting."""

    __slots__ = ("_clock", "_completed", "_running", "_start_ns")

    def __init__(self, clock: Callable[[], int] = time.monotonic_ns) -> None:
        self._clock = clock
        self._completed: list[StageRecord] = []
        self._running: dict[str, StageRecord] = {}
        self._start_ns: int = clock()

    def start(self, name: str) -> None:
        self._running[name] = StageRecord(name=name, start_ns=self._clock())

    def end(self, name: str) -> None:
        """Close *name*; unknown or already-closed stages are ignored."""
        record = self._running.pop(name, None)
        if record is not None:
            record.end_ns = self._clock()
            self._completed.append(record)

    def finalize(self) -> None:
        """Close every running stage.  Call on success or error."""
        for name in list(self._running):
            self.end(name)

    @property
    def running(self) -> list[str]:
        return list(self._running)

    @property
    def total_ms(self) -> float:
        return round((self._clock() - self._start_ns) / 1e6, 1)

    def elapsed_per_stage(self) -> dict[str, float]:
        """``{stage_name: elapsed_ms}`` in completion order, running stages last."""
        now = self._clock()
        result = {s.name: s.elapsed_ms(now) for s in self._completed}
        for s in self._running.values():
            result[s.name] = s.elapsed_ms(now)
        return result

    def timeout_report(self) -> dict:
        """Structured diagnostic for a build that hit its timeout."""
        now = self._clock()
        running = self.running
        current = running[0] if running else "unknown"
        return {
            "error": "timeout",
            "completed_stages": [{"stage": s.name, "ms": s.elapsed_ms(now)} for s in self._completed],
            "timed_out_at": current,
            "running_stages": running,
            "total_ms": round((now - self._start_ns) / 1e6, 1),
            "hint": self.hint_for_stage(current),
        }

    @staticmethod
    def hint_for_stage(stage: str) -> str:
        hints = {
            "scan_assets": "Static directory is very large or on slow storage. Narrow the extension list.",
            "extract_critical_css": "Stylesheets or the sample page are very large.",
            "rewrite_templates": "A content transform is slow. Check custom transforms.",
            "bundle_resources": "Bundles are large. Lower the compression level.",
            "optimize_templates": "Many or very large templates. Lower the compression level.",
            "generate_reports": "Report directory is slow to write.",
        }
        return hints.get(stage, f"Timed out during '{stage}' stage.")
