# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Plain-text build reports.

Written by the generate_reports stage into ``<output_dir>/reports`` and
served as-is by the orchestrator's summary/report accessors.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path

from tabulate import tabulate

from . import BuildResults
from .bundler import BundleSet
from .critical_css import ExtractionStats
from .templates import TemplateAnalysis

logger = logging.getLogger(__name__)

FIRST_PACKET_REPORT = "first-packet-optimization.txt"
BUNDLING_REPORT = "resource-bundling.txt"
CRITICAL_CSS_REPORT = "critical-css-extraction.txt"
SUMMARY_REPORT = "build-summary.txt"
CACHE_REPORT = "build-cache.json"

_RULE = "=" * 60


def build_summary(results: BuildResults | None) -> str:
    if results is None:
        return "No build has run yet.\n"
    status = "SUCCESS" if results.success else "FAILED"
    lines = [
        "Build Optimization Summary",
        _RULE,
        f"Build ID: {results.build_id}",
        f"Status: {status}",
        f"Duration: {results.duration:.2f}s",
        f"Files Processed: {results.total_files}",
        f"Files Optimized: {results.optimized_files}",
        f"Size Savings: {results.size_savings} bytes",
        f"Compliance Rate: {results.compliance_rate * 100:.1f}%",
    ]
    for title, items in (
        ("Compliance Violations", results.compliance_violations),
        ("Warnings", results.warnings),
        ("Errors", results.errors),
    ):
        if items:
            lines.append("")
            lines.append(f"{title}:")
            lines.extend(f"  - {item}" for item in items)
    if results.stage_timings:
        lines.append("")
        lines.append("Stage Timings:")
        lines.extend(f"  {name}: {ms:.1f}ms" for name, ms in results.stage_timings.items())
    return "\n".join(lines) + "\n"


def bundle_rows(bundle_set: BundleSet, cache_busting: bool = True) -> list[list]:
    rows = []
    for bundle in sorted(bundle_set.values(), key=lambda b: (-b.load_priority, b.name)):
        rows.append(
            [
                bundle.name,
                bundle.type.value,
                "yes" if bundle.critical else "no",
                len(bundle.assets),
                bundle.uncompressed_size,
                bundle.compressed_size,
                bundle.load_priority,
                bundle.filename(cache_busting) if bundle.writable else "-",
            ]
        )
    return rows


BUNDLE_HEADERS = ["Bundle", "Type", "Critical", "Assets", "Raw", "Compressed", "Priority", "File"]


def bundling_report(bundle_set: BundleSet | None, cache_busting: bool = True) -> str:
    lines = ["Resource Bundling Report", _RULE]
    if bundle_set is None or not len(bundle_set):
        lines.append("No bundles were built.")
    else:
        lines.append(tabulate(bundle_rows(bundle_set, cache_busting), headers=BUNDLE_HEADERS, tablefmt="simple"))
        lines.append("")
        lines.append(f"Total raw: {bundle_set.total_uncompressed} bytes")
        lines.append(f"Total compressed: {bundle_set.total_compressed} bytes")
    if bundle_set is not None and bundle_set.violations:
        lines.append("")
        lines.append("Budget violations:")
        lines.extend(f"  - {v}" for v in bundle_set.violations)
    return "\n".join(lines) + "\n"


def first_packet_report(analyses: Sequence[TemplateAnalysis], budget: int) -> str:
    lines = ["First Packet Optimization Report", _RULE, f"Budget: {budget} bytes", ""]
    if not analyses:
        lines.append("No templates analyzed.")
        return "\n".join(lines) + "\n"
    compliant = sum(1 for a in analyses if a.compliant)
    lines.append(f"Templates: {len(analyses)} ({compliant} compliant)")
    lines.append("")
    rows = [
        [
            a.name,
            a.source_size,
            a.optimized_size,
            a.sizes.gzip,
            a.sizes.brotli,
            "yes" if a.compliant else "NO",
        ]
        for a in analyses
    ]
    lines.append(tabulate(rows, headers=["Template", "Source", "Optimized", "Gzip", "Brotli", "OK"], tablefmt="simple"))
    with_recs = [a for a in analyses if a.recommendations]
    if with_recs:
        lines.append("")
        lines.append("Recommendations:")
        for a in with_recs:
            lines.append(f"  {a.name}:")
            lines.extend(f"    - {r}" for r in a.recommendations)
    return "\n".join(lines) + "\n"


def critical_css_report(stats: ExtractionStats, css: str) -> str:
    lines = [
        "Critical CSS Extraction Report",
        _RULE,
        f"Input: {stats.input_bytes} bytes",
        f"Output: {stats.output_bytes} bytes (budget {stats.budget_bytes})",
        f"Reduction: {stats.reduction_pct:.1f}%",
        f"Rules: {stats.selected_rules} selected / {stats.used_rules} used / {stats.total_rules} parsed",
        f"Malformed rules skipped: {stats.malformed_rules}",
        f"At-rules skipped: {stats.at_rules}",
    ]
    if stats.extracted_at is not None:
        lines.append(f"Extracted at: {stats.extracted_at.isoformat()}")
    lines.append("")
    lines.append("Critical CSS:")
    lines.append(css or "(empty)")
    return "\n".join(lines) + "\n"


def write_reports(
    reports_dir: str | Path,
    texts: dict[str, str],
    cache_entries: list[dict] | None = None,
) -> list[Path]:
    """Write each ``{filename: text}`` plus the optional cache metadata file."""
    out = Path(reports_dir)
    out.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for filename, text in texts.items():
        path = out / filename
        path.write_text(text, encoding="utf-8")
        written.append(path)
    if cache_entries is not None:
        path = out / CACHE_REPORT
        path.write_text(json.dumps(cache_entries, indent=2), encoding="utf-8")
        written.append(path)
    logger.info("Wrote %d reports to %s", len(written), out)
    return written
