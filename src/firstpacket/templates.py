# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTML template rewriting and first-packet compliance analysis.

Rewrites are pluggable :class:`ContentTransform` objects applied in order;
the built-in :class:`MinifyHtml` is regex based and leaves ``<pre>``,
``<textarea>``, ``<script>`` and ``<style>`` bodies untouched.

A template is compliant when the smaller of its gzip/brotli encodings
(after minification and critical-CSS inlining) fits the critical budget.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from . import MAX_FIRST_PACKET_SIZE
from .compressor import DEFAULT_LEVEL, EncodedSizes, encoded_sizes

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = (".html", ".htm", ".tmpl", ".gohtml")

_LARGE_TEMPLATE_BYTES = 50_000
_POOR_RATIO = 0.7
_NEAR_LIMIT_FRACTION = 0.9

_PROTECTED_RE = re.compile(r"(<(pre|textarea|script|style)\b.*?</\2\s*>)", re.DOTALL | re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--(?!\[if).*?-->", re.DOTALL)
_TAG_GAP_RE = re.compile(r">\s+<")
_WS_RE = re.compile(r"\s+")
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Content transforms
# ---------------------------------------------------------------------------


@runtime_checkable
class ContentTransform(Protocol):
    """``transform(html) -> html``.  Raising leaves the template unchanged."""

    name: str

    def transform(self, html: str) -> str: ...


class MinifyHtml:
    """Strip comments and collapse inter-tag whitespace.

    Comments listed in *keep* (e.g. the critical-CSS placeholder) and IE
    conditional comments survive.
    """

    name = "minify_html"

    def __init__(self, keep: Iterable[str] = ()) -> None:
        self._keep = frozenset(keep)

    def _drop_comment(self, match: re.Match[str]) -> str:
        text = match.group(0)
        return text if text in self._keep else ""

    def transform(self, html: str) -> str:
        parts = _PROTECTED_RE.split(html)
        out: list[str] = []
        # split() with two groups yields [text, block, tag, text, block, tag, ...]
        for i in range(0, len(parts), 3):
            text = _COMMENT_RE.sub(self._drop_comment, parts[i])
            text = _TAG_GAP_RE.sub("><", text)
            out.append(_WS_RE.sub(" ", text))
            if i + 1 < len(parts):
                out.append(parts[i + 1])
        return "".join(out).strip()


def inline_critical_css(html: str, css: str, placeholder: str) -> str:
    """Put *css* in a ``<style>`` block at *placeholder*, else before ``</head>``.

    With empty *css* the placeholder is just removed.  Markup without
    either anchor is returned unchanged.
    """
    block = f"<style>{css}</style>" if css else ""
    if placeholder and placeholder in html:
        return html.replace(placeholder, block)
    if not block:
        return html
    match = _HEAD_CLOSE_RE.search(html)
    if match is None:
        return html
    return html[: match.start()] + block + html[match.start() :]


# ---------------------------------------------------------------------------
# Compliance analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TemplateAnalysis:
    name: str
    source_size: int
    sizes: EncodedSizes
    budget: int
    recommendations: tuple[str, ...] = ()

    @property
    def optimized_size(self) -> int:
        return self.sizes.original

    @property
    def compressed_size(self) -> int:
        return self.sizes.best

    @property
    def compliant(self) -> bool:
        return self.sizes.best <= self.budget

    @property
    def violation(self) -> str | None:
        if self.compliant:
            return None
        return (
            f"{self.name}: {self.sizes.best} bytes compressed "
            f"(exceeds {self.budget} by {self.sizes.best - self.budget} bytes)"
        )


def recommendations_for(sizes: EncodedSizes, budget: int) -> list[str]:
    recs: list[str] = []
    if sizes.best > budget:
        recs.append(f"Template exceeds {budget}-byte limit by {sizes.best - budget} bytes")
    if sizes.original > _LARGE_TEMPLATE_BYTES:
        recs.append("Consider splitting large templates into smaller components")
    if sizes.original and sizes.ratio > _POOR_RATIO:
        recs.append("Poor compression ratio - consider removing redundant content")
    if _NEAR_LIMIT_FRACTION * budget < sizes.best <= budget:
        recs.append(f"Template is close to the {budget}-byte limit - monitor for future additions")
    return recs


def analyze_template(
    name: str,
    content: bytes,
    budget: int = MAX_FIRST_PACKET_SIZE,
    *,
    source_size: int | None = None,
    level: int = DEFAULT_LEVEL,
) -> TemplateAnalysis:
    """Measure *content* under both encodings and judge it against *budget*."""
    sizes = encoded_sizes(content, level)
    analysis = TemplateAnalysis(
        name=name,
        source_size=len(content) if source_size is None else source_size,
        sizes=sizes,
        budget=budget,
        recommendations=tuple(recommendations_for(sizes, budget)),
    )
    if not analysis.compliant:
        logger.warning("Template %s not first-packet compliant: %d bytes", name, sizes.best)
    return analysis


def find_templates(templates_dir: str | Path) -> list[Path]:
    """Template files under *templates_dir*, sorted; missing dir → empty."""
    root = Path(templates_dir)
    if not root.is_dir():
        logger.info("Templates directory %s not found; no templates to optimize", root)
        return []
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in TEMPLATE_EXTENSIONS)
