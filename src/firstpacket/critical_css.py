# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Critical CSS extraction under a byte budget.

Flow:
  full CSS
    → top-level rule scan (malformed rules and at-rule blocks skipped)
    → selector scoring (layout/structural high, pseudo/deep/below-fold low)
    → usage filter against tag/class/id names present in the page
    → greedy fill by score until the next rule would overflow the budget
    → minification

Usage is a name-presence heuristic, not CSS matching: a selector counts as
used when every tag, class and id it names appears somewhere in the page.
Combinators, attribute selectors, pseudo-classes and the cascade are not
evaluated.  ``html``, ``body``, ``*``, ``:root`` and headings are always kept.

Rules are never truncated: the output is whole rules only, and
``len(output.encode()) <= budget_bytes`` always holds.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from lxml import etree
from lxml import html as lxml_html

from .errors import ExtractionError

logger = logging.getLogger(__name__)

ALWAYS_CRITICAL = frozenset({"html", "body", "*", ":root", "h1", "h2", "h3", "h4", "h5", "h6"})

# Selector scoring policy (tunable, not a contract)
_HIGH_PRIORITY = ("body", "html", "*", "container", "header", "nav", "main", ":root")
_MEDIUM_PRIORITY = ("h1", "h2", "h3", "btn", "form", "input", "card", "hero", "logo")
_BELOW_FOLD = ("footer", "sidebar", "aside", "pagination", "load-more", "modal", "contact-form")
_HIGH_WEIGHT = 100
_MEDIUM_WEIGHT = 50
_BELOW_FOLD_PENALTY = 60
_COMBINATOR_PENALTY = 5
_PSEUDO_PENALTY = 20

# Pre-compiled patterns for minify_css()
_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_WS_RE = re.compile(r"\s+")
_PUNCT_SPACE_RE = re.compile(r"\s*([{};,>])\s*")
_COLON_SPACE_RE = re.compile(r":\s+")
_TRAILING_SEMI_RE = re.compile(r";}")
_EMPTY_RULE_RE = re.compile(r"[^{}]+\{\}")
# Value position only, so id selectors such as #aabbcc are left alone.
_HEX_RE = re.compile(r"(?<=[:,( ])#([0-9a-fA-F])\1([0-9a-fA-F])\2([0-9a-fA-F])\3(?=[;}),! ]|$)")
_BOX_ZERO_RE = re.compile(r"\b(margin|padding):0(?:px)? 0(?:px)? 0(?:px)? 0(?:px)?(?=[;}]|$)")
_FONT_QUOTES_RE = re.compile(r"font-family:[\"']([a-zA-Z-]+)[\"']")

# Selector name extraction
_PSEUDO_RE = re.compile(r"::?[a-zA-Z-]+(?:\([^)]*\))?")
_ATTR_RE = re.compile(r"\[[^\]]*\]")
_CLASS_RE = re.compile(r"\.(-?[_a-zA-Z][\w-]*)")
_ID_RE = re.compile(r"#(-?[_a-zA-Z][\w-]*)")
_TAG_RE = re.compile(r"(?:^|[\s>+~])([a-zA-Z][\w-]*)")
_COMBINATOR_RE = re.compile(r"\s*[>+~]\s*|\s+")


# ---------------------------------------------------------------------------
# Minification
# ---------------------------------------------------------------------------


def minify_css(css: str, level: int = 2) -> str:
    """Strip comments and whitespace; level >= 2 also shortens values.

    Level 1: comments, whitespace, trailing semicolons, empty rules.
    Level 2: ``#aabbcc`` → ``#abc``, ``margin: 0 0 0 0`` → ``0``, needless font quotes.
    """
    if not css:
        return css
    result = _COMMENT_RE.sub("", css)
    result = _WS_RE.sub(" ", result)
    result = _PUNCT_SPACE_RE.sub(r"\1", result)
    result = _COLON_SPACE_RE.sub(":", result)
    result = _TRAILING_SEMI_RE.sub("}", result)
    result = _EMPTY_RULE_RE.sub("", result)
    if level >= 2:
        result = _HEX_RE.sub(r"#\1\2\3", result)
        result = _BOX_ZERO_RE.sub(r"\1:0", result)
        result = _FONT_QUOTES_RE.sub(r"font-family:\1", result)
    return result.strip()


# ---------------------------------------------------------------------------
# Rule parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CssRule:
    """One top-level ``selector { declarations }`` rule."""

    selector: str
    declarations: tuple[tuple[str, str], ...]
    position: int  # source order, used as a stable tie-breaker

    @property
    def selectors(self) -> list[str]:
        return [part.strip() for part in self.selector.split(",") if part.strip()]

    def to_css(self) -> str:
        body = ";".join(f"{prop}:{value}" for prop, value in self.declarations)
        return minify_css(f"{self.selector}{{{body}}}")


@dataclass
class ParseResult:
    rules: list[CssRule] = field(default_factory=list)
    malformed: int = 0
    at_rules: int = 0


def _parse_rule(prelude: str, body: str, position: int) -> CssRule:
    selector = _WS_RE.sub(" ", prelude).strip()
    if not selector:
        raise ExtractionError(f"rule #{position} has an empty selector")
    if "}" in selector or ";" in selector:
        raise ExtractionError(f"rule #{position} has a malformed selector: {selector[:40]!r}")

    declarations: list[tuple[str, str]] = []
    for raw in body.split(";"):
        raw = raw.strip()
        if not raw:
            continue
        prop, sep, value = raw.partition(":")
        prop = prop.strip()
        value = _WS_RE.sub(" ", value).strip()
        if not sep or not prop or not value:
            raise ExtractionError(f"rule {selector[:40]!r} has a malformed declaration: {raw[:40]!r}")
        declarations.append((prop, value))
    return CssRule(selector=selector, declarations=tuple(declarations), position=position)


def parse_css(css: str) -> ParseResult:
    """Scan *css* into top-level rules.

    Malformed rules (empty selector, declaration without ``prop: value``,
    unbalanced braces) are skipped and counted.  At-rule blocks such as
    ``@media`` and ``@font-face`` and at-statements such as ``@import`` are
    skipped: only plain rules are candidates for inlining.
    """
    result = ParseResult()
    text = _COMMENT_RE.sub("", css)
    length = len(text)
    i = 0
    prelude_start = 0
    position = 0

    while i < length:
        ch = text[i]
        if ch == ";":
            # Top-level statement (e.g. @import, @charset) or stray declaration
            stmt = text[prelude_start:i].strip()
            if stmt and not stmt.startswith("@"):
                result.malformed += 1
                logger.debug("Skipping stray CSS statement: %r", stmt[:40])
            elif stmt:
                result.at_rules += 1
            prelude_start = i + 1
        elif ch == "}":
            result.malformed += 1
            logger.debug("Skipping unbalanced '}' at offset %d", i)
            prelude_start = i + 1
        elif ch == "{":
            prelude = text[prelude_start:i]
            depth = 1
            j = i + 1
            nested = False
            while j < length and depth:
                if text[j] == "{":
                    depth += 1
                    nested = True
                elif text[j] == "}":
                    depth -= 1
                j += 1
            if depth:
                result.malformed += 1
                logger.debug("Skipping unterminated CSS rule: %r", prelude.strip()[:40])
                break
            body = text[i + 1 : j - 1]
            if prelude.strip().startswith("@"):
                result.at_rules += 1
            elif nested:
                result.malformed += 1
                logger.debug("Skipping CSS rule with nested braces: %r", prelude.strip()[:40])
            else:
                try:
                    rule = _parse_rule(prelude, body, position)
                except ExtractionError as e:
                    result.malformed += 1
                    logger.debug("Skipping malformed CSS rule: %s", e)
                else:
                    if rule.declarations:
                        result.rules.append(rule)
                        position += 1
            i = j
            prelude_start = j
            continue
        i += 1

    return result


# ---------------------------------------------------------------------------
# Scoring and usage
# ---------------------------------------------------------------------------


def selector_score(selector: str) -> int:
    """Heuristic above-the-fold priority of a selector (higher first)."""
    lowered = selector.lower()
    score = 0
    for token in _HIGH_PRIORITY:
        if token in lowered:
            score += _HIGH_WEIGHT
    for token in _MEDIUM_PRIORITY:
        if token in lowered:
            score += _MEDIUM_WEIGHT
    for token in _BELOW_FOLD:
        if token in lowered:
            score -= _BELOW_FOLD_PENALTY

    for part in lowered.split(","):
        combinators = len(_COMBINATOR_RE.findall(part.strip()))
        score -= combinators * _COMBINATOR_PENALTY
    if ":" in lowered.replace(":root", ""):
        score -= _PSEUDO_PENALTY
    return score


@dataclass(frozen=True, slots=True)
class PageNames:
    """Tag, class and id names present in a page."""

    tags: frozenset[str]
    classes: frozenset[str]
    ids: frozenset[str]


def collect_names(markup: str) -> PageNames:
    """Parse *markup* with lxml and collect its tag/class/id names."""
    if not markup or not markup.strip():
        return PageNames(frozenset(), frozenset(), frozenset())
    try:
        doc = lxml_html.document_fromstring(markup)
    except (etree.ParserError, ValueError) as e:
        logger.debug("HTML parse failed, no names collected: %s", e)
        return PageNames(frozenset(), frozenset(), frozenset())

    tags: set[str] = set()
    classes: set[str] = set()
    ids: set[str] = set()
    for el in doc.iter():
        if not isinstance(el.tag, str):
            continue  # comments, processing instructions
        tags.add(el.tag.lower())
        classes.update(el.get("class", "").split())
        el_id = el.get("id")
        if el_id:
            ids.add(el_id.strip())
    return PageNames(frozenset(tags), frozenset(classes), frozenset(ids))


def is_always_critical(selector: str) -> bool:
    return any(part.strip().lower() in ALWAYS_CRITICAL for part in selector.split(","))


def selector_used(selector: str, names: PageNames) -> bool:
    """True when any comma part names only tags/classes/ids present in the page."""
    if is_always_critical(selector):
        return True
    for part in selector.split(","):
        bare = _ATTR_RE.sub("", _PSEUDO_RE.sub("", part)).strip()
        classes = _CLASS_RE.findall(bare)
        ids = _ID_RE.findall(bare)
        tags = [t.lower() for t in _TAG_RE.findall(bare)]
        if not (classes or ids or tags):
            continue
        if (
            all(c in names.classes for c in classes)
            and all(i in names.ids for i in ids)
            and all(t in names.tags for t in tags)
        ):
            return True
    return False


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass
class ExtractionStats:
    """Counters from one extraction, for reporting."""

    input_bytes: int = 0
    output_bytes: int = 0
    total_rules: int = 0
    malformed_rules: int = 0
    at_rules: int = 0
    used_rules: int = 0
    selected_rules: int = 0
    budget_bytes: int = 0
    extracted_at: datetime | None = None

    @property
    def reduction_pct(self) -> float:
        if not self.input_bytes:
            return 0.0
        return (1.0 - self.output_bytes / self.input_bytes) * 100


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _extract(full_css: str, html: str, budget_bytes: int) -> tuple[str, ExtractionStats]:
    stats = ExtractionStats(input_bytes=_byte_len(full_css), budget_bytes=budget_bytes)
    if budget_bytes <= 0 or not full_css.strip():
        return "", stats

    parsed = parse_css(full_css)
    stats.total_rules = len(parsed.rules)
    stats.malformed_rules = parsed.malformed
    stats.at_rules = parsed.at_rules

    names = collect_names(html)
    used = [rule for rule in parsed.rules if selector_used(rule.selector, names)]
    stats.used_rules = len(used)

    ranked = sorted(used, key=lambda r: (-selector_score(r.selector), r.position))

    selected: list[str] = []
    total = 0
    for rule in ranked:
        rule_css = rule.to_css()
        size = _byte_len(rule_css)
        if total + size > budget_bytes:
            break
        selected.append(rule_css)
        total += size

    output = minify_css("".join(selected))
    # Minified output must still fit the budget.
    while selected and _byte_len(output) > budget_bytes:
        selected.pop()
        output = minify_css("".join(selected))

    stats.selected_rules = len(selected)
    stats.output_bytes = _byte_len(output)
    return output, stats


def extract_critical(full_css: str, html: str, budget_bytes: int) -> str:
    """Return the whole-rule subset of *full_css* needed to paint *html*.

    Empty string when ``budget_bytes <= 0`` or when the highest-priority
    used rule alone exceeds the budget.
    """
    output, _ = _extract(full_css, html, budget_bytes)
    return output


class CriticalCSSExtractor:
    """Stateful wrapper that remembers the last extraction for reporting."""

    def __init__(self, budget_bytes: int) -> None:
        self.budget_bytes = budget_bytes
        self._css = ""
        self._stats = ExtractionStats(budget_bytes=budget_bytes)

    def extract(self, full_css: str, html: str, budget_bytes: int | None = None) -> str:
        budget = self.budget_bytes if budget_bytes is None else budget_bytes
        output, stats = _extract(full_css, html, budget)
        stats.extracted_at = datetime.now(UTC)
        self._css = output
        self._stats = stats
        logger.info(
            "Critical CSS: %d/%d rules selected (%d used, %d malformed), %d/%d bytes",
            stats.selected_rules,
            stats.total_rules,
            stats.used_rules,
            stats.malformed_rules,
            stats.output_bytes,
            budget,
        )
        return output

    @property
    def css(self) -> str:
        return self._css

    @property
    def stats(self) -> ExtractionStats:
        return self._stats
