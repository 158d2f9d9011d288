# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Build orchestrator: runs the optimization pipeline.

Default pipeline::

    scan_assets
      → [extract_critical_css ∥ rewrite_templates]   (parallel group)
      → bundle_resources
      → optimize_templates
      → validate_compliance                          (when enabled)
      → generate_reports

A critical stage that exhausts its retries aborts the build; later stages
are skipped and ``build_optimized`` raises :class:`BuildError` carrying the
partial results.  Non-critical failures become warnings.  Side effects of
stages that already ran are kept.

One build at a time per instance: the lock only guards the published
``last_build_results``, not the build itself.

Usage::

    async with Orchestrator(OrchestratorConfig.from_env()) as orch:
        results = await orch.build_optimized()
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Sequence
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import TypeVar

from . import AssetType, BuildResults
from .build_cache import BuildCache, cache_key
from .bundler import BundleBuilder, BundleSet, preload_hints, write_bundles
from .catalog import AssetCatalog, tree_fingerprint
from .compressor import Compressor
from .config import OrchestratorConfig
from .critical_css import CriticalCSSExtractor, ExtractionStats
from .errors import BuildError
from .logging_config import bound_build
from .pipeline_timer import PipelineTimer
from .reports import (
    BUNDLING_REPORT,
    CRITICAL_CSS_REPORT,
    FIRST_PACKET_REPORT,
    SUMMARY_REPORT,
    build_summary,
    bundling_report,
    critical_css_report,
    first_packet_report,
    write_reports,
)
from .stages import Backoff, OptimizationStage, Sleep, StageOutcome, linear_backoff, parallel_groups, run_stage
from .templates import (
    ContentTransform,
    MinifyHtml,
    TemplateAnalysis,
    analyze_template,
    find_templates,
    inline_critical_css,
)

logger = logging.getLogger(__name__)

_BASE_TEMPLATE = Path("layout") / "base.html"

_T = TypeVar("_T")


class _CriticalStageFailed(Exception):
    """Raised inside a parallel group to cancel the remaining members."""

    def __init__(self, outcome: StageOutcome) -> None:
        super().__init__(outcome.stage)
        self.outcome = outcome


# ---------------------------------------------------------------------------
# Per-build accumulators
# ---------------------------------------------------------------------------


class _StageFindings:
    """Findings of one stage attempt.

    Stage bodies running in worker threads write here, never to the build
    recorder directly.  The orchestrator merges an attempt's findings only
    once the attempt has completed, so failed, retried or timed-out
    attempts leave no trace in the results.
    """

    def __init__(self) -> None:
        self.warnings: list[str] = []
        self.violations: list[str] = []
        self.total_files = 0
        self.optimized_files = 0
        self.raw_bytes = 0
        self.compressed_bytes = 0
        self.checked = 0
        self.compliant = 0
        # Set when the awaiting attempt was cancelled; the worker must stop writing output.
        self.abandoned = False

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def violation(self, message: str) -> None:
        self.violations.append(message)

    def add_files(self, total: int = 0, optimized: int = 0) -> None:
        self.total_files += total
        self.optimized_files += optimized

    def artifact(self, raw: int, compressed: int, compliant: bool | None = None) -> None:
        """Account one output.  ``compliant=None`` means not budget-checked."""
        self.raw_bytes += raw
        self.compressed_bytes += compressed
        if compliant is not None:
            self.checked += 1
            self.compliant += int(compliant)


class _BuildRecorder:
    """Findings of one build: merged stage findings plus build-level errors."""

    def __init__(self, build_id: str) -> None:
        self.build_id = build_id
        self.start_time = datetime.now(UTC)
        self._lock = threading.Lock()
        self._totals = _StageFindings()
        self._errors: list[str] = []

    def warn(self, message: str) -> None:
        with self._lock:
            self._totals.warn(message)

    def error(self, message: str) -> None:
        with self._lock:
            self._errors.append(message)

    def violation(self, message: str) -> None:
        with self._lock:
            self._totals.violation(message)

    def add_files(self, total: int = 0, optimized: int = 0) -> None:
        with self._lock:
            self._totals.add_files(total, optimized)

    def merge(self, findings: _StageFindings) -> None:
        with self._lock:
            totals = self._totals
            totals.warnings.extend(findings.warnings)
            totals.violations.extend(findings.violations)
            totals.add_files(findings.total_files, findings.optimized_files)
            totals.raw_bytes += findings.raw_bytes
            totals.compressed_bytes += findings.compressed_bytes
            totals.checked += findings.checked
            totals.compliant += findings.compliant

    @property
    def violations(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._totals.violations)

    def finalize(self, success: bool, stage_timings: dict[str, float], *, end: bool = True) -> BuildResults:
        with self._lock:
            t = self._totals
            rate = t.compliant / t.checked if t.checked else 1.0
            return BuildResults(
                success=success,
                start_time=self.start_time,
                end_time=datetime.now(UTC) if end else None,
                total_files=t.total_files,
                optimized_files=t.optimized_files,
                compliance_violations=tuple(t.violations),
                warnings=tuple(t.warnings),
                errors=tuple(self._errors),
                size_savings=max(0, t.raw_bytes - t.compressed_bytes),
                compliance_rate=rate,
                stage_timings=dict(stage_timings),
                build_id=self.build_id,
            )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Owns the configuration, collaborators, pipeline and last results.

    Args:
        config: build options (defaults if omitted).
        catalog / builder / cache: swappable collaborators.  ``cache=None``
            with ``enable_build_cache`` creates a private BuildCache.
        transforms: content transforms for the rewrite stage
            (default: :class:`MinifyHtml` keeping the CSS placeholder).
        stages: replace the default pipeline.
        backoff / sleep: retry delay policy and the sleep it goes through.
        dry_run: compute everything, write nothing.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        catalog: AssetCatalog | None = None,
        builder: BundleBuilder | None = None,
        cache: BuildCache | None = None,
        transforms: Iterable[ContentTransform] | None = None,
        stages: Sequence[OptimizationStage] | None = None,
        backoff: Backoff = linear_backoff,
        sleep: Sleep = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        self._config = config or OrchestratorConfig()
        cfg = self._config
        self._catalog = catalog or AssetCatalog(cfg.extensions, cfg.critical_patterns)
        self._builder = builder or BundleBuilder(
            cfg,
            Compressor(cfg.compression_algorithm, cfg.compression_level),
            loader=self._catalog.read,
        )
        if cache is None and cfg.enable_build_cache:
            cache = BuildCache(ttl=cfg.cache_ttl, max_entries=cfg.cache_max_entries)
        self._cache = cache if cfg.enable_build_cache else None
        if transforms is None:
            transforms = [MinifyHtml(keep=(cfg.critical_css_placeholder,))] if cfg.minify else []
        self._transforms = list(transforms)
        self._backoff = backoff
        self._sleep = sleep
        self._dry_run = dry_run
        self._pipeline = list(stages) if stages is not None else self._default_pipeline()

        self._results_lock = threading.Lock()
        self._last_results: BuildResults | None = None

        # Per-build state, replaced at the start of each build
        self._recorder = _BuildRecorder("")
        self._timer = PipelineTimer()
        self._deadline = 0.0
        self._bundles: BundleSet | None = None
        self._critical_css = ""
        self._critical_css_stats = ExtractionStats(budget_bytes=cfg.critical_css_budget)
        self._rewritten: dict[str, str] = {}
        self._template_analyses: list[TemplateAnalysis] = []

        # Background tasks owned by the async context manager
        self._sweeper_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None

    def _default_pipeline(self) -> list[OptimizationStage]:
        # (name, func, parallelizable, critical, timeout s, retries)
        table = [
            ("scan_assets", self._scan_assets, False, True, 30.0, 2),
            ("extract_critical_css", self._extract_critical_css, True, True, 60.0, 2),
            ("rewrite_templates", self._rewrite_templates, True, False, 45.0, 1),
            ("bundle_resources", self._bundle_resources, False, True, 120.0, 2),
            ("optimize_templates", self._optimize_templates, False, True, 90.0, 2),
            ("validate_compliance", self._validate_compliance, False, True, 30.0, 1),
            ("generate_reports", self._generate_reports, False, False, 15.0, 1),
        ]
        return [
            OptimizationStage(name, func, parallelizable=par, critical=crit, timeout=timeout, max_retries=retries)
            for name, func, par, crit, timeout, retries in table
            if name != "validate_compliance" or self._config.validate_compliance
        ]

    # -- Accessors --

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def pipeline(self) -> tuple[OptimizationStage, ...]:
        return tuple(self._pipeline)

    @property
    def catalog(self) -> AssetCatalog:
        return self._catalog

    @property
    def cache(self) -> BuildCache | None:
        return self._cache

    @property
    def last_build_results(self) -> BuildResults | None:
        with self._results_lock:
            return self._last_results

    @property
    def bundles(self) -> BundleSet | None:
        return self._bundles

    @property
    def critical_css(self) -> str:
        return self._critical_css

    @property
    def critical_css_stats(self) -> ExtractionStats:
        return self._critical_css_stats

    @property
    def template_analyses(self) -> tuple[TemplateAnalysis, ...]:
        return tuple(self._template_analyses)

    def preload_hints(self, url_prefix: str = "/static/dist") -> list[str]:
        if self._bundles is None:
            return []
        return preload_hints(self._bundles, url_prefix, self._config.cache_busting)

    def build_summary(self) -> str:
        return build_summary(self.last_build_results)

    def report(self) -> str:
        """All text reports for the last build, concatenated."""
        parts = [
            self.build_summary(),
            bundling_report(self._bundles, self._config.cache_busting),
            first_packet_report(self._template_analyses, self._config.critical_budget),
            critical_css_report(self._critical_css_stats, self._critical_css),
        ]
        return "\n".join(parts)

    def _publish(self, results: BuildResults) -> None:
        with self._results_lock:
            self._last_results = results

    # -- Build --

    async def build_optimized(self) -> BuildResults:
        """Run the pipeline once.

        Returns:
            Finalized results when no critical stage failed.

        Raises:
            BuildError: a critical stage failed or the build timed out;
                ``.results`` holds the partial results (``success=False``).
            asyncio.CancelledError: after publishing partial results.
        """
        build_id = uuid.uuid4().hex[:12]
        self._reset_build_state(build_id)
        recorder = self._recorder
        timer = self._timer
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self._config.build_timeout

        with bound_build(build_id):
            mode = "parallel" if self._config.parallel_stages else "sequential"
            logger.info("Build %s started (%s, %d stages)", build_id, mode, len(self._pipeline))
            failure: str | None = None
            try:
                async with asyncio.timeout(self._config.build_timeout):
                    failure = await self._execute(recorder)
            except TimeoutError:
                report = timer.timeout_report()
                failure = (
                    f"build timed out after {self._config.build_timeout:.1f}s "
                    f"during {report['timed_out_at']}: {report['hint']}"
                )
                recorder.error(failure)
                logger.error("Build %s timed out: %s", build_id, report)
            except asyncio.CancelledError:
                timer.finalize()
                recorder.error("build cancelled")
                self._publish(recorder.finalize(False, timer.elapsed_per_stage()))
                logger.warning("Build %s cancelled", build_id)
                raise

            timer.finalize()
            results = recorder.finalize(failure is None, timer.elapsed_per_stage())
            self._publish(results)
            if failure is not None:
                logger.error("Build %s failed in %.2fs: %s", build_id, results.duration, failure)
                raise BuildError(failure, results=results)
            logger.info(
                "Build %s completed in %.2fs: %d files, %d violations, %d warnings",
                build_id,
                results.duration,
                results.total_files,
                len(results.compliance_violations),
                len(results.warnings),
            )
            return results

    def _reset_build_state(self, build_id: str) -> None:
        self._recorder = _BuildRecorder(build_id)
        self._timer = PipelineTimer()
        self._bundles = None
        self._critical_css = ""
        self._critical_css_stats = ExtractionStats(budget_bytes=self._config.critical_css_budget)
        self._rewritten = {}
        self._template_analyses = []

    def _time_left(self) -> float:
        return self._deadline - asyncio.get_running_loop().time()

    async def _execute(self, recorder: _BuildRecorder) -> str | None:
        """Run stage groups in order.  Returns the failure message, if any."""
        groups = parallel_groups(self._pipeline, self._config.parallel_stages)
        for index, group in enumerate(groups):
            if len(group) == 1:
                outcomes = [await self._run(group[0])]
            else:
                outcomes = await self._run_group(group, recorder)

            failure = None
            for outcome in outcomes:
                if outcome.succeeded:
                    continue
                if outcome.critical:
                    recorder.error(str(outcome.error))
                    failure = failure or f"critical stage {outcome.stage} failed: {outcome.error}"
                else:
                    recorder.warn(f"non-critical stage {outcome.stage} failed: {outcome.error}")
            if failure is not None:
                skipped = [s.name for g in groups[index + 1 :] for s in g]
                if skipped:
                    logger.warning("Skipping stages after failure: %s", ", ".join(skipped))
                return failure
        return None

    async def _run(self, stage: OptimizationStage) -> StageOutcome:
        self._timer.start(stage.name)
        logger.info("Stage %s started", stage.name)
        # A cancelled stage stays open in the timer so the timeout report can
        # name it; timer.finalize() closes it.
        outcome = await run_stage(stage, time_left=self._time_left, backoff=self._backoff, sleep=self._sleep)
        self._timer.end(stage.name)
        if outcome.succeeded:
            logger.info("Stage %s completed (attempts=%d)", stage.name, outcome.attempts)
        return outcome

    async def _run_group(self, group: list[OptimizationStage], recorder: _BuildRecorder) -> list[StageOutcome]:
        """Fan out *group*, join all.  A critical failure cancels the siblings."""
        outcomes: dict[str, StageOutcome] = {}

        async def member(stage: OptimizationStage) -> None:
            outcome = await self._run(stage)
            outcomes[stage.name] = outcome
            if not outcome.succeeded and stage.critical:
                raise _CriticalStageFailed(outcome)

        logger.info("Running parallel group: %s", ", ".join(s.name for s in group))
        try:
            async with asyncio.TaskGroup() as tg:
                for stage in group:
                    tg.create_task(member(stage), name=f"firstpacket-stage-{stage.name}")
        except* _CriticalStageFailed:
            for stage in group:
                if stage.name not in outcomes:
                    recorder.warn(f"stage {stage.name} cancelled after a critical failure in its group")
        return [outcomes[s.name] for s in group if s.name in outcomes]

    # -- Stages --

    async def _in_thread(self, func: Callable[[_StageFindings], _T]) -> _T:
        """Run one stage attempt's blocking body in a worker thread.

        The attempt's findings are merged into the build only when the body
        returns.  A worker outliving a cancelled or timed-out attempt keeps
        running, so it is marked abandoned and skips writing output.
        """
        findings = _StageFindings()
        try:
            result = await asyncio.to_thread(func, findings)
        except asyncio.CancelledError:
            findings.abandoned = True
            raise
        self._recorder.merge(findings)
        return result

    def _excluded_dirs(self) -> list[str]:
        return [self._config.output_dir, self._config.cache_dir]

    async def _scan_assets(self) -> None:
        await asyncio.to_thread(self._catalog.scan, self._config.static_dir, exclude=self._excluded_dirs())
        self._recorder.add_files(total=len(self._catalog))

    async def _extract_critical_css(self) -> None:
        self._critical_css, self._critical_css_stats = await self._in_thread(self._extract_critical_css_sync)

    def _extract_critical_css_sync(self, findings: _StageFindings) -> tuple[str, ExtractionStats]:
        budget = self._config.critical_css_budget
        css_assets = [a for a in self._catalog.assets() if a.type is AssetType.CSS]
        if not css_assets:
            logger.info("No stylesheets in catalog; critical CSS is empty")
            return "", ExtractionStats(budget_bytes=budget)
        sample = self._sample_markup()
        key = cache_key(
            {
                "kind": "critical_css",
                "css": [[a.path, a.content_hash] for a in css_assets],
                "html": hashlib.sha256(sample.encode("utf-8")).hexdigest(),
                "budget": budget,
            }
        )
        if self._cache is not None and (entry := self._cache.get(key)) is not None:
            return entry.output_artifact
        full_css = "\n".join(self._catalog.read(a).decode("utf-8", errors="replace") for a in css_assets)
        extractor = CriticalCSSExtractor(budget)
        css = extractor.extract(full_css, sample)
        if self._cache is not None:
            self._cache.store(key, (css, extractor.stats), size=len(css.encode("utf-8")), compliance_ok=True)
        return css, extractor.stats

    def _sample_markup(self) -> str:
        """Markup the critical-CSS usage check runs against.

        The base layout when present, otherwise every template together.
        """
        templates_dir = Path(self._config.templates_dir)
        base = templates_dir / _BASE_TEMPLATE
        if base.is_file():
            return base.read_text(encoding="utf-8", errors="replace")
        paths = find_templates(templates_dir)
        if not paths:
            logger.warning("No templates found under %s; keeping only always-critical rules", templates_dir)
        return "\n".join(p.read_text(encoding="utf-8", errors="replace") for p in paths)

    async def _rewrite_templates(self) -> None:
        self._rewritten = await self._in_thread(self._rewrite_templates_sync)

    def _rewrite_templates_sync(self, findings: _StageFindings) -> dict[str, str]:
        templates_dir = Path(self._config.templates_dir)
        rewritten: dict[str, str] = {}
        for path in find_templates(templates_dir):
            rel = path.relative_to(templates_dir).as_posix()
            html = path.read_text(encoding="utf-8", errors="replace")
            for transform in self._transforms:
                try:
                    html = transform.transform(html)
                except Exception as e:
                    findings.warn(f"{rel}: transform {getattr(transform, 'name', transform)} failed: {e}")
                    logger.warning("Transform failed on %s: %s", rel, e)
            rewritten[rel] = html
        logger.info("Rewrote %d templates with %d transforms", len(rewritten), len(self._transforms))
        return rewritten

    async def _bundle_resources(self) -> None:
        self._bundles = await self._in_thread(self._bundle_resources_sync)

    def _bundle_resources_sync(self, findings: _StageFindings) -> BundleSet:
        assets = self._catalog.assets()
        key = cache_key(
            {
                "kind": "bundles",
                "assets": [[a.path, a.content_hash, a.type.value, a.critical] for a in assets],
                "config": self._config.cache_fields(),
            }
        )
        bundle_set: BundleSet | None = None
        if self._cache is not None and (entry := self._cache.get(key)) is not None:
            bundle_set = entry.output_artifact
            logger.info("Bundles served from build cache")
        if bundle_set is None:
            bundle_set = self._builder.build(assets)
            if self._cache is not None:
                self._cache.store(
                    key,
                    bundle_set,
                    size=bundle_set.total_compressed,
                    compliance_ok=not bundle_set.violations,
                )

        for violation in bundle_set.violations:
            findings.violation(violation)
        for bundle in bundle_set.values():
            raw = sum(a.size for a in bundle.assets)
            compliant = bundle.name not in bundle_set.trimmed if bundle.critical else None
            findings.artifact(raw, bundle.compressed_size, compliant)
        for name in bundle_set.trimmed:
            if name not in bundle_set:
                findings.artifact(0, 0, False)  # omitted: nothing fit
        findings.add_files(optimized=bundle_set.asset_count)

        if not self._dry_run and not findings.abandoned:
            write_bundles(bundle_set, self._config.output_dir, self._config.cache_busting)
        return bundle_set

    async def _optimize_templates(self) -> None:
        self._template_analyses = await self._in_thread(self._optimize_templates_sync)

    def _optimize_templates_sync(self, findings: _StageFindings) -> list[TemplateAnalysis]:
        cfg = self._config
        templates_dir = Path(cfg.templates_dir)
        out_dir = Path(cfg.output_dir) / "templates"
        css = self._critical_css
        analyses: list[TemplateAnalysis] = []
        paths = find_templates(templates_dir)
        findings.add_files(total=len(paths))

        for path in paths:
            rel = path.relative_to(templates_dir).as_posix()
            source = path.read_bytes()
            html = self._rewritten.get(rel)
            if html is None:
                html = source.decode("utf-8", errors="replace")
            key = cache_key(
                {
                    "kind": "template",
                    "name": rel,
                    "html": hashlib.sha256(html.encode("utf-8")).hexdigest(),
                    "css": hashlib.sha256(css.encode("utf-8")).hexdigest(),
                    "config": cfg.cache_fields(),
                }
            )
            cached = self._cache.get(key) if self._cache is not None else None
            if cached is not None:
                optimized, analysis = cached.output_artifact
            else:
                optimized = inline_critical_css(html, css, cfg.critical_css_placeholder)
                analysis = analyze_template(
                    rel, optimized.encode("utf-8"), cfg.critical_budget, source_size=len(source)
                )
                if self._cache is not None:
                    self._cache.store(
                        key,
                        (optimized, analysis),
                        size=analysis.compressed_size,
                        compliance_ok=analysis.compliant,
                    )

            analyses.append(analysis)
            if analysis.violation is not None:
                findings.violation(analysis.violation)
            findings.artifact(analysis.source_size, analysis.compressed_size, analysis.compliant)
            findings.add_files(optimized=1)

            if not self._dry_run and not findings.abandoned:
                target = out_dir / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(optimized, encoding="utf-8")

        logger.info(
            "Optimized %d templates (%d compliant)",
            len(analyses),
            sum(1 for a in analyses if a.compliant),
        )
        return analyses

    async def _validate_compliance(self) -> None:
        """Audit outputs against the budgets; findings are violations, never errors."""
        cfg = self._config
        recorder = self._recorder
        known = set(recorder.violations)
        if self._bundles is not None:
            for bundle in self._bundles.critical():
                if bundle.compressed_size > cfg.critical_budget:
                    message = (
                        f"{bundle.name}: {bundle.compressed_size} bytes compressed "
                        f"(exceeds {cfg.critical_budget} by {bundle.compressed_size - cfg.critical_budget} bytes)"
                    )
                    if message not in known:
                        recorder.violation(message)
        css_size = len(self._critical_css.encode("utf-8"))
        if css_size > cfg.critical_css_budget:
            recorder.violation(f"critical CSS: {css_size} bytes (exceeds {cfg.critical_css_budget} byte budget)")
        count = len(recorder.violations)
        if count:
            logger.warning("Compliance check: %d violation(s)", count)
        else:
            logger.info("Compliance check passed")

    async def _generate_reports(self) -> None:
        if self._dry_run:
            logger.info("Dry run: reports not written")
            return
        preview = self._recorder.finalize(True, self._timer.elapsed_per_stage(), end=False)
        texts = {
            FIRST_PACKET_REPORT: first_packet_report(self._template_analyses, self._config.critical_budget),
            BUNDLING_REPORT: bundling_report(self._bundles, self._config.cache_busting),
            CRITICAL_CSS_REPORT: critical_css_report(self._critical_css_stats, self._critical_css),
            SUMMARY_REPORT: build_summary(preview),
        }
        snapshot = self._cache.snapshot() if self._cache is not None else None
        await asyncio.to_thread(write_reports, self._config.reports_dir, texts, snapshot)

    # -- Watch mode --

    async def watch(self, *, max_builds: int | None = None) -> None:
        """Rebuild whenever the static or template tree changes.

        Polls every ``watch_interval`` seconds until cancelled (or after
        *max_builds* builds).  Failed builds are logged and watching goes on.
        """
        cfg = self._config
        last: str | None = None
        builds = 0
        logger.info("Watching %s and %s (interval %.1fs)", cfg.static_dir, cfg.templates_dir, cfg.watch_interval)
        while True:
            fingerprint = await asyncio.to_thread(
                tree_fingerprint, cfg.static_dir, cfg.templates_dir, exclude=self._excluded_dirs()
            )
            if fingerprint != last:
                if last is not None:
                    logger.info("Change detected, rebuilding")
                last = fingerprint
                try:
                    await self.build_optimized()
                except BuildError as e:
                    logger.error("Watch rebuild failed: %s", e)
                builds += 1
                if max_builds is not None and builds >= max_builds:
                    return
            await self._sleep(cfg.watch_interval)

    async def join_watch(self) -> None:
        """Wait for the background watch loop started under ``watch_mode``."""
        if self._watch_task is not None:
            await self._watch_task

    # -- Background task lifecycle --

    async def __aenter__(self) -> Orchestrator:
        self._shutdown_event = asyncio.Event()
        if self._cache is not None:
            self._start_sweeper()
        if self._config.watch_mode:
            self._watch_task = asyncio.get_running_loop().create_task(self.watch(), name="firstpacket-watch")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def _start_sweeper(self) -> None:
        loop = asyncio.get_running_loop()
        self._sweeper_task = loop.create_task(self._sweeper_loop(), name="firstpacket-cache-sweeper")
        self._sweeper_task.add_done_callback(self._handle_sweeper_crash)

    def _handle_sweeper_crash(self, task: asyncio.Task) -> None:
        """Restart the sweeper if it died unexpectedly (not cancelled)."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._shutdown_event is not None and not self._shutdown_event.is_set():
            logger.error("Cache sweeper crashed, restarting: %s", exc, exc_info=exc)
            self._start_sweeper()

    async def _sweeper_loop(self) -> None:
        """Periodically drop TTL-expired cache entries."""
        shutdown, cache = self._shutdown_event, self._cache
        if shutdown is None or cache is None:
            return
        while not shutdown.is_set():
            try:
                async with asyncio.timeout(self._config.cache_sweep_interval):
                    await shutdown.wait()
                    return  # shutdown requested
            except TimeoutError:
                pass  # normal wakeup
            await asyncio.to_thread(cache.prune_expired)

    async def shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        for task in (self._watch_task, self._sweeper_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._watch_task = None
        self._sweeper_task = None
