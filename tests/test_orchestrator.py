# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for firstpacket.orchestrator — pipeline execution end to end.

Tests: default pipeline on a small project, critical/non-critical stage
failures, parallel-group cancellation, build timeout and cancellation,
build-cache reuse, dry run, watch mode, cache sweeper lifecycle.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import threading
from pathlib import Path

import pytest

from firstpacket import orchestrator as orchestrator_module
from firstpacket.build_cache import BuildCache
from firstpacket.bundler import BundleBuilder
from firstpacket.catalog import AssetCatalog
from firstpacket.errors import BuildError
from firstpacket.orchestrator import Orchestrator
from firstpacket.reports import CACHE_REPORT, SUMMARY_REPORT
from firstpacket.stages import OptimizationStage
from tests._helpers import write_file

DEFAULT_STAGES = [
    "scan_assets",
    "extract_critical_css",
    "rewrite_templates",
    "bundle_resources",
    "optimize_templates",
    "validate_compliance",
    "generate_reports",
]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeSleep:
    def __init__(self, on_call=None) -> None:
        self.delays: list[float] = []
        self._on_call = on_call

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._on_call is not None:
            self._on_call(len(self.delays))


class CountingBuilder(BundleBuilder):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.builds = 0

    def build(self, assets):
        self.builds += 1
        return super().build(assets)


class StopWatching(Exception):
    pass


def _recording_stage(name: str, log: list[str], *, fail: int = 0, **kwargs) -> OptimizationStage:
    """Stage appending *name* to *log* on each attempt; fails the first *fail* attempts."""
    attempts = {"n": 0}

    async def func():
        attempts["n"] += 1
        log.append(name)
        if attempts["n"] <= fail:
            raise RuntimeError(f"{name} broke")

    return OptimizationStage(name=name, func=func, **kwargs)


def _counting_orchestrator(config, **kwargs) -> tuple[Orchestrator, CountingBuilder]:
    catalog = AssetCatalog(config.extensions, config.critical_patterns)
    builder = CountingBuilder(config, loader=catalog.read)
    return Orchestrator(config, catalog=catalog, builder=builder, **kwargs), builder


# =========================================================================
# Default pipeline
# =========================================================================


class TestDefaultPipeline:
    def test_stage_table(self, config):
        orch = Orchestrator(config)
        pipeline = {s.name: s for s in orch.pipeline}
        assert list(pipeline) == DEFAULT_STAGES
        assert pipeline["extract_critical_css"].parallelizable
        assert pipeline["rewrite_templates"].parallelizable
        assert not pipeline["rewrite_templates"].critical
        assert not pipeline["generate_reports"].critical
        assert pipeline["bundle_resources"].timeout == 120.0
        assert pipeline["scan_assets"].max_retries == 2

    def test_validation_stage_optional(self, config):
        orch = Orchestrator(dataclasses.replace(config, validate_compliance=False))
        assert "validate_compliance" not in [s.name for s in orch.pipeline]

    def test_cache_disabled(self, config):
        orch = Orchestrator(dataclasses.replace(config, enable_build_cache=False), cache=BuildCache())
        assert orch.cache is None

    def test_accessors_before_build(self, config):
        orch = Orchestrator(config)
        assert orch.last_build_results is None
        assert orch.build_summary() == "No build has run yet.\n"
        assert orch.preload_hints() == []
        assert orch.bundles is None


class TestBuildOptimized:
    async def test_full_build(self, config):
        orch = Orchestrator(config)
        results = await orch.build_optimized()

        assert results.success
        assert results.errors == ()
        assert results.compliance_violations == ()
        assert results.compliance_rate == 1.0
        assert results.total_files == 8  # 6 assets + 2 templates
        assert results.optimized_files == 8
        assert results.size_savings >= 0
        assert results.end_time is not None
        assert len(results.build_id) == 12
        assert list(results.stage_timings) != []
        assert set(results.stage_timings) == set(DEFAULT_STAGES)
        assert orch.last_build_results is results

    async def test_outputs_written(self, config):
        orch = Orchestrator(config)
        await orch.build_optimized()
        out = Path(config.output_dir)

        manifest = json.loads((out / "manifest.json").read_text())
        assert set(manifest) == {
            "critical.css",
            "extended.css",
            "critical.js",
            "app.js",
            "critical-images",
            "lazy-images",
        }
        assert (out / manifest["critical.css"]["file"]).is_file()

        base = (out / "templates" / "layout" / "base.html").read_text()
        assert "<style>html,body{margin:0;padding:0}" in base
        assert config.critical_css_placeholder not in base
        assert (out / "templates" / "pages" / "index.html").is_file()

        reports = config.reports_dir
        assert "Status: SUCCESS" in (reports / SUMMARY_REPORT).read_text()
        assert isinstance(json.loads((reports / CACHE_REPORT).read_text()), list)

    async def test_outputs_not_rescanned(self, config):
        orch = Orchestrator(config)
        await orch.build_optimized()
        results = await orch.build_optimized()
        assert results.total_files == 8
        assert all(not a.path.startswith("dist/") for a in orch.catalog.assets())

    async def test_accessors_after_build(self, config):
        orch = Orchestrator(config)
        await orch.build_optimized()
        hints = orch.preload_hints()
        assert len(hints) == 2
        assert 'as="style"' in hints[0]
        assert 'as="script"' in hints[1]
        assert orch.critical_css.startswith("html,body")
        assert orch.critical_css_stats.selected_rules > 0
        assert [a.name for a in orch.template_analyses] == ["layout/base.html", "pages/index.html"]
        report = orch.report()
        assert "Build Optimization Summary" in report
        assert "Resource Bundling Report" in report
        assert "Critical CSS Extraction Report" in report

    async def test_sequential_matches_parallel(self, config):
        parallel = Orchestrator(config, dry_run=True)
        sequential = Orchestrator(dataclasses.replace(config, parallel_stages=False), dry_run=True)
        await parallel.build_optimized()
        await sequential.build_optimized()
        assert list(parallel.bundles) == list(sequential.bundles)
        assert parallel.critical_css == sequential.critical_css

    async def test_dry_run_writes_nothing(self, config):
        orch = Orchestrator(config, dry_run=True)
        results = await orch.build_optimized()
        assert results.success
        assert orch.bundles is not None
        assert not Path(config.output_dir).exists()

    async def test_budget_violations_do_not_fail_build(self, config):
        orch = Orchestrator(dataclasses.replace(config, critical_budget=10), dry_run=True)
        results = await orch.build_optimized()
        assert results.success
        assert results.compliance_violations
        assert results.compliance_rate < 1.0
        assert any("critical.css" in v for v in results.compliance_violations)
        assert any("layout/base.html" in v for v in results.compliance_violations)

    async def test_broken_transform_is_warning(self, config):
        class Broken:
            name = "broken"

            def transform(self, html):
                raise ValueError("nope")

        orch = Orchestrator(config, transforms=[Broken()], dry_run=True)
        results = await orch.build_optimized()
        assert results.success
        assert any("transform broken failed" in w for w in results.warnings)

    async def test_missing_static_dir_fails(self, config, tmp_path):
        cfg = dataclasses.replace(config, static_dir=str(tmp_path / "missing"))
        orch = Orchestrator(cfg, sleep=FakeSleep())
        with pytest.raises(BuildError) as exc_info:
            await orch.build_optimized()
        results = exc_info.value.results
        assert not results.success
        assert "scan_assets" in str(exc_info.value)
        assert "bundle_resources" not in results.stage_timings


# =========================================================================
# Build cache
# =========================================================================


class TestBuildCacheReuse:
    async def test_second_build_hits_cache(self, config):
        orch, builder = _counting_orchestrator(config)
        first = await orch.build_optimized()
        second = await orch.build_optimized()
        assert builder.builds == 1
        assert orch.cache.stats.hits > 0
        assert first.compliance_rate == second.compliance_rate
        assert first.total_files == second.total_files

    async def test_changed_asset_misses(self, config):
        orch, builder = _counting_orchestrator(config)
        await orch.build_optimized()
        write_file(Path(config.static_dir), "css/extra.css", ".sidebar { width: 250px; }\n")
        await orch.build_optimized()
        assert builder.builds == 2

    async def test_disabled_cache_rebuilds(self, config):
        orch, builder = _counting_orchestrator(dataclasses.replace(config, enable_build_cache=False))
        await orch.build_optimized()
        await orch.build_optimized()
        assert builder.builds == 2

    async def test_shared_cache_restores_extraction_stats(self, config):
        cache = BuildCache()
        first = Orchestrator(config, cache=cache, dry_run=True)
        await first.build_optimized()
        second = Orchestrator(config, cache=cache, dry_run=True)
        await second.build_optimized()
        assert second.critical_css == first.critical_css
        assert second.critical_css_stats.selected_rules == first.critical_css_stats.selected_rules > 0
        assert second.critical_css_stats.total_rules == first.critical_css_stats.total_rules


# =========================================================================
# Stage failures
# =========================================================================


class TestStageFailures:
    async def test_retry_then_success(self, config):
        log: list[str] = []
        sleep = FakeSleep()
        stages = [_recording_stage("flaky", log, fail=1, max_retries=1)]
        results = await Orchestrator(config, stages=stages, sleep=sleep).build_optimized()
        assert results.success
        assert log == ["flaky", "flaky"]
        assert sleep.delays == [1.0]

    async def test_critical_failure_stops_pipeline(self, config):
        log: list[str] = []
        stages = [
            _recording_stage("first", log),
            _recording_stage("broken", log, fail=99, max_retries=1),
            _recording_stage("never", log),
        ]
        orch = Orchestrator(config, stages=stages, sleep=FakeSleep())
        with pytest.raises(BuildError) as exc_info:
            await orch.build_optimized()
        assert log == ["first", "broken", "broken"]
        results = exc_info.value.results
        assert not results.success
        assert any("broken broke" in e for e in results.errors)
        assert orch.last_build_results is results
        assert "never" not in results.stage_timings

    async def test_non_critical_failure_is_warning(self, config):
        log: list[str] = []
        stages = [
            _recording_stage("optional", log, fail=99, critical=False, max_retries=0),
            _recording_stage("after", log),
        ]
        results = await Orchestrator(config, stages=stages, sleep=FakeSleep()).build_optimized()
        assert results.success
        assert log == ["optional", "after"]
        assert any(w.startswith("non-critical stage optional failed") for w in results.warnings)
        assert results.compliance_rate == 1.0

    async def test_parallel_critical_failure_cancels_siblings(self, config):
        started = asyncio.Event()
        finished: list[str] = []

        async def slow():
            started.set()
            await asyncio.sleep(10)
            finished.append("slow")

        async def broken():
            await started.wait()
            raise RuntimeError("group member broke")

        stages = [
            OptimizationStage("slow", slow, parallelizable=True, max_retries=0),
            OptimizationStage("broken", broken, parallelizable=True, max_retries=0),
        ]
        orch = Orchestrator(config, stages=stages, sleep=FakeSleep())
        with pytest.raises(BuildError) as exc_info:
            await orch.build_optimized()
        results = exc_info.value.results
        assert finished == []
        assert any("slow cancelled" in w for w in results.warnings)
        assert any("group member broke" in e for e in results.errors)

    async def test_parallel_non_critical_failure_keeps_siblings(self, config):
        log: list[str] = []
        stages = [
            _recording_stage("a", log, parallelizable=True),
            _recording_stage("b", log, fail=99, parallelizable=True, critical=False, max_retries=0),
        ]
        results = await Orchestrator(config, stages=stages, sleep=FakeSleep()).build_optimized()
        assert results.success
        assert sorted(log) == ["a", "b"]


# =========================================================================
# Retried attempts
# =========================================================================


def _fail_first_call(func, exc: Exception):
    calls = {"n": 0}

    def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise exc
        return func(*args, **kwargs)

    wrapper.calls = calls
    return wrapper


class TestRetriedAttempts:
    async def test_bundle_retry_counts_once(self, config, monkeypatch):
        cfg = dataclasses.replace(config, enable_build_cache=False, critical_budget=40)
        baseline = await Orchestrator(cfg, sleep=FakeSleep()).build_optimized()
        assert baseline.compliance_violations

        flaky = _fail_first_call(orchestrator_module.write_bundles, OSError("disk full"))
        monkeypatch.setattr(orchestrator_module, "write_bundles", flaky)
        results = await Orchestrator(cfg, sleep=FakeSleep()).build_optimized()

        assert flaky.calls["n"] == 2
        assert results.total_files == baseline.total_files
        assert results.optimized_files == baseline.optimized_files
        assert results.size_savings == baseline.size_savings
        assert results.compliance_rate == baseline.compliance_rate
        assert results.compliance_violations == baseline.compliance_violations

    async def test_template_retry_counts_once(self, config, monkeypatch):
        cfg = dataclasses.replace(config, enable_build_cache=False)
        baseline = await Orchestrator(cfg, sleep=FakeSleep()).build_optimized()

        real_write_text = Path.write_text
        failed: list[Path] = []

        def write_text(self, *args, **kwargs):
            if not failed and "templates" in self.parts:
                failed.append(self)
                raise OSError("read-only output")
            return real_write_text(self, *args, **kwargs)

        monkeypatch.setattr(Path, "write_text", write_text)
        results = await Orchestrator(cfg, sleep=FakeSleep()).build_optimized()

        assert len(failed) == 1
        assert results.success
        assert results.total_files == baseline.total_files
        assert results.optimized_files == baseline.optimized_files
        assert results.size_savings == baseline.size_savings

    async def test_timed_out_worker_is_discarded(self, config):
        orch = Orchestrator(config)
        release = threading.Event()
        done = threading.Event()
        seen: dict[str, bool] = {}

        def body(findings):
            findings.add_files(total=5, optimized=5)
            findings.violation("late finding")
            release.wait(5)
            seen["abandoned"] = findings.abandoned
            done.set()

        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.05):
                await orch._in_thread(body)
        release.set()
        await asyncio.to_thread(done.wait, 5)

        assert seen["abandoned"] is True
        partial = orch._recorder.finalize(False, {})
        assert partial.total_files == 0
        assert partial.compliance_violations == ()


# =========================================================================
# Timeout / cancellation
# =========================================================================


class TestTimeoutAndCancellation:
    async def test_build_timeout(self, config):
        async def hang():
            await asyncio.sleep(10)

        cfg = dataclasses.replace(config, build_timeout=0.1)
        stages = [OptimizationStage("bundle_resources", hang, max_retries=0, timeout=60.0)]
        orch = Orchestrator(cfg, stages=stages, sleep=FakeSleep())
        with pytest.raises(BuildError, match="timed out") as exc_info:
            await orch.build_optimized()
        message = str(exc_info.value)
        assert "bundle_resources" in message
        assert "unknown" not in message
        results = exc_info.value.results
        assert not results.success
        assert results.end_time is not None
        assert "bundle_resources" in results.stage_timings

    async def test_cancel_publishes_partial_results(self, config):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        orch = Orchestrator(config, stages=[OptimizationStage("hang", hang)], sleep=FakeSleep())
        task = asyncio.create_task(orch.build_optimized())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        results = orch.last_build_results
        assert results is not None
        assert not results.success
        assert "build cancelled" in results.errors
        assert "hang" in results.stage_timings


# =========================================================================
# Watch mode
# =========================================================================


class TestWatch:
    async def test_rebuilds_on_change(self, config):
        static = Path(config.static_dir)

        def touch(n: int) -> None:
            if n == 1:
                write_file(static, "css/new.css", ".new { color: red; }")

        orch = Orchestrator(config, sleep=FakeSleep(touch), dry_run=True)
        await orch.watch(max_builds=2)
        assert orch.catalog.get("css/new.css") is not None

    async def test_no_rebuild_without_change(self, config):
        def stop(n: int) -> None:
            if n == 3:
                raise StopWatching

        orch = Orchestrator(config, sleep=FakeSleep(stop), dry_run=True)
        calls: list[int] = []
        original = orch.build_optimized

        async def counting():
            calls.append(1)
            return await original()

        orch.build_optimized = counting
        with pytest.raises(StopWatching):
            await orch.watch()
        assert len(calls) == 1

    async def test_failed_build_keeps_watching(self, config):
        static = Path(config.static_dir)
        log: list[str] = []

        def touch(n: int) -> None:
            write_file(static, f"css/n{n}.css", "a{}")

        stages = [_recording_stage("broken", log, fail=99, max_retries=0)]
        orch = Orchestrator(config, stages=stages, sleep=FakeSleep(touch))
        await orch.watch(max_builds=2)
        assert log == ["broken", "broken"]
        assert not orch.last_build_results.success

    async def test_watch_mode_runs_in_background(self, config):
        async def short_sleep(delay: float) -> None:
            await asyncio.sleep(0.01)

        cfg = dataclasses.replace(config, watch_mode=True)
        async with Orchestrator(cfg, sleep=short_sleep, dry_run=True) as orch:
            for _ in range(200):
                if orch.last_build_results is not None:
                    break
                await asyncio.sleep(0.01)
            assert orch.last_build_results is not None
            assert orch.last_build_results.success
        assert orch._watch_task is None

    async def test_join_watch_without_watch_mode(self, config):
        async with Orchestrator(config) as orch:
            await orch.join_watch()  # returns immediately


# =========================================================================
# Cache sweeper
# =========================================================================


class TestCacheSweeper:
    async def test_sweeper_lifecycle(self, config):
        async with Orchestrator(config) as orch:
            assert orch._sweeper_task is not None
            assert not orch._sweeper_task.done()
        assert orch._sweeper_task is None

    async def test_no_sweeper_without_cache(self, config):
        async with Orchestrator(dataclasses.replace(config, enable_build_cache=False)) as orch:
            assert orch._sweeper_task is None

    async def test_sweeper_prunes_expired(self, config):
        now = {"t": 1000.0}
        cache = BuildCache(ttl=10, clock=lambda: now["t"])
        cache.store("old", "v", size=1, compliance_ok=True)
        now["t"] += 60
        cfg = dataclasses.replace(config, cache_sweep_interval=0.01)
        async with Orchestrator(cfg, cache=cache):
            for _ in range(100):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
        assert len(cache) == 0

    async def test_sweeper_restarts_after_crash(self, config):
        class CrashOnceCache(BuildCache):
            calls = 0

            def prune_expired(self):
                CrashOnceCache.calls += 1
                if CrashOnceCache.calls == 1:
                    raise RuntimeError("sweep crashed")
                return super().prune_expired()

        cfg = dataclasses.replace(config, cache_sweep_interval=0.01)
        async with Orchestrator(cfg, cache=CrashOnceCache()) as orch:
            for _ in range(100):
                if CrashOnceCache.calls >= 2:
                    break
                await asyncio.sleep(0.01)
            assert orch._sweeper_task is not None
        assert CrashOnceCache.calls >= 2
