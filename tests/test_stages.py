# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for firstpacket.stages — retry state machine, timeouts, grouping."""

from __future__ import annotations

import asyncio

import pytest

from firstpacket.errors import StageError, StageTimeoutError
from firstpacket.stages import (
    OptimizationStage,
    StageState,
    linear_backoff,
    no_backoff,
    parallel_groups,
    run_stage,
)

P, R, S, F = StageState.PENDING, StageState.RUNNING, StageState.SUCCEEDED, StageState.FAILED

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: int):
    """Stage func failing the first *failures* calls."""
    calls = {"n": 0}

    async def func():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise RuntimeError(f"boom {calls['n']}")

    return func, calls


async def _noop():
    return None


def _stage(name: str, **kwargs) -> OptimizationStage:
    kwargs.setdefault("func", _noop)
    return OptimizationStage(name=name, **kwargs)


# =========================================================================
# OptimizationStage
# =========================================================================


class TestOptimizationStage:
    def test_defaults(self):
        stage = _stage("a")
        assert stage.critical is True
        assert stage.parallelizable is False
        assert stage.timeout == 30.0
        assert stage.max_retries == 1

    @pytest.mark.parametrize("kwargs", [{"timeout": 0}, {"timeout": -1}, {"max_retries": -1}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            _stage("a", **kwargs)

    def test_backoff_policies(self):
        assert [linear_backoff(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
        assert no_backoff(5) == 0.0


# =========================================================================
# run_stage
# =========================================================================


class TestRunStage:
    async def test_success_first_attempt(self):
        outcome = await run_stage(_stage("a"))
        assert outcome.succeeded
        assert outcome.attempts == 1
        assert outcome.transitions == [P, R, S]
        assert outcome.error is None

    async def test_retry_then_success(self):
        func, calls = _flaky(1)
        sleep = FakeSleep()
        outcome = await run_stage(_stage("a", func=func, max_retries=1), sleep=sleep)
        assert outcome.succeeded
        assert calls["n"] == 2
        assert outcome.transitions == [P, R, F, R, S]
        assert sleep.delays == [1.0]

    async def test_exhausted_retries(self):
        func, calls = _flaky(10)
        sleep = FakeSleep()
        outcome = await run_stage(_stage("a", func=func, max_retries=2), sleep=sleep)
        assert outcome.state is F
        assert calls["n"] == 3
        assert outcome.attempts == 3
        assert sleep.delays == [1.0, 2.0]  # no sleep after the last attempt
        assert isinstance(outcome.error, StageError)
        assert outcome.error.stage == "a"
        assert outcome.error.attempts == 3
        assert isinstance(outcome.error.__cause__, RuntimeError)
        assert "boom 3" in str(outcome.error)

    async def test_zero_retries_single_attempt(self):
        func, calls = _flaky(10)
        outcome = await run_stage(_stage("a", func=func, max_retries=0), sleep=FakeSleep())
        assert calls["n"] == 1
        assert outcome.transitions == [P, R, F]

    async def test_timeout_is_failure(self):
        async def slow():
            await asyncio.sleep(10)

        outcome = await run_stage(_stage("slow", func=slow, timeout=0.05, max_retries=0))
        assert outcome.state is F
        assert isinstance(outcome.error, StageTimeoutError)

    async def test_time_left_caps_timeout(self):
        async def slow():
            await asyncio.sleep(10)

        outcome = await run_stage(
            _stage("slow", func=slow, timeout=30, max_retries=0),
            time_left=lambda: 0.05,
        )
        assert isinstance(outcome.error, StageTimeoutError)
        assert outcome.attempts == 1

    async def test_custom_backoff(self):
        func, _ = _flaky(2)
        sleep = FakeSleep()
        await run_stage(_stage("a", func=func, max_retries=2), backoff=lambda n: n * 0.5, sleep=sleep)
        assert sleep.delays == [0.5, 1.0]

    async def test_non_critical_flag_carried(self):
        func, _ = _flaky(10)
        outcome = await run_stage(_stage("a", func=func, critical=False, max_retries=0))
        assert outcome.critical is False
        assert not outcome.succeeded

    async def test_cancellation_propagates(self):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(run_stage(_stage("hang", func=hang)))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# =========================================================================
# parallel_groups
# =========================================================================


class TestParallelGroups:
    def _names(self, groups):
        return [[s.name for s in g] for g in groups]

    def test_consecutive_parallelizable_grouped(self):
        stages = [
            _stage("scan"),
            _stage("css", parallelizable=True),
            _stage("rewrite", parallelizable=True),
            _stage("bundle"),
            _stage("report", parallelizable=True),
        ]
        assert self._names(parallel_groups(stages, True)) == [["scan"], ["css", "rewrite"], ["bundle"], ["report"]]

    def test_sequential_mode(self):
        stages = [_stage("a", parallelizable=True), _stage("b", parallelizable=True)]
        assert self._names(parallel_groups(stages, False)) == [["a"], ["b"]]

    def test_empty(self):
        assert parallel_groups([], True) == []
