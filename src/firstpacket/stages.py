# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pipeline stage declarations and the per-stage retry state machine.

    PENDING -> RUNNING -> SUCCEEDED
                  |
                  v
               FAILED --(retries left, after backoff)--> RUNNING

A stage gets ``max_retries + 1`` attempts.  Each attempt runs under
``min(stage.timeout, time left in the build)``; a timed-out attempt is a
failure like any other.  Backoff delays go through an injectable ``sleep``
so tests never wait on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from .errors import StageError, StageTimeoutError

logger = logging.getLogger(__name__)

StageFunc = Callable[[], Awaitable[None]]
Backoff = Callable[[int], float]
Sleep = Callable[[float], Awaitable[None]]


class StageState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def linear_backoff(attempt: int) -> float:
    """Delay after failed attempt *attempt* (1-based): ``attempt`` seconds."""
    return float(attempt)


def no_backoff(attempt: int) -> float:
    return 0.0


@dataclass(frozen=True, slots=True)
class OptimizationStage:
    """Declarative description of one pipeline step."""

    name: str
    func: StageFunc = field(compare=False)
    parallelizable: bool = False
    critical: bool = True
    timeout: float = 30.0
    max_retries: int = 1

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"stage {self.name}: timeout must be positive")
        if self.max_retries < 0:
            raise ValueError(f"stage {self.name}: max_retries must be >= 0")


@dataclass
class StageOutcome:
    """What happened to one stage during a build."""

    stage: str
    critical: bool = True
    state: StageState = StageState.PENDING
    attempts: int = 0
    error: StageError | None = None
    transitions: list[StageState] = field(default_factory=lambda: [StageState.PENDING])

    def transition(self, state: StageState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state is StageState.SUCCEEDED


async def run_stage(
    stage: OptimizationStage,
    *,
    time_left: Callable[[], float] | None = None,
    backoff: Backoff = linear_backoff,
    sleep: Sleep = asyncio.sleep,
) -> StageOutcome:
    """Run *stage* through its retry state machine.

    Never raises for stage failures: the final error is on the outcome.
    ``asyncio.CancelledError`` propagates.
    """
    outcome = StageOutcome(stage=stage.name, critical=stage.critical)
    total = stage.max_retries + 1
    for attempt in range(1, total + 1):
        outcome.transition(StageState.RUNNING)
        outcome.attempts = attempt
        limit = stage.timeout if time_left is None else max(0.0, min(stage.timeout, time_left()))
        if attempt > 1:
            logger.info("Retrying stage %s (attempt %d/%d)", stage.name, attempt, total)
        try:
            async with asyncio.timeout(limit):
                await stage.func()
        except TimeoutError:
            error: StageError = StageTimeoutError(
                f"stage {stage.name} timed out after {limit:.1f}s",
                stage=stage.name,
                attempts=attempt,
            )
        except Exception as e:
            error = StageError(f"stage {stage.name} failed: {e}", stage=stage.name, attempts=attempt)
            error.__cause__ = e
        else:
            outcome.transition(StageState.SUCCEEDED)
            return outcome

        outcome.transition(StageState.FAILED)
        outcome.error = error
        if attempt < total:
            delay = backoff(attempt)
            logger.warning(
                "Stage %s attempt %d/%d failed: %s; retrying in %.1fs", stage.name, attempt, total, error, delay
            )
            await sleep(delay)
        else:
            log = logger.error if stage.critical else logger.warning
            log("Stage %s failed after %d attempt(s): %s", stage.name, attempt, error)
    return outcome


def parallel_groups(stages: list[OptimizationStage], parallel: bool) -> list[list[OptimizationStage]]:
    """Group *stages* for execution.

    Sequential mode: one stage per group.  Parallel mode: each maximal run of
    consecutive parallelizable stages forms one group.
    """
    groups: list[list[OptimizationStage]] = []
    for stage in stages:
        if parallel and stage.parallelizable and groups and groups[-1][0].parallelizable:
            groups[-1].append(stage)
        else:
            groups.append([stage])
    return groups
