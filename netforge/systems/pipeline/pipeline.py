"""
Netforge -- Task Pipeline

Runs an ordered list of named steps against a shared context.

  - Steps run strictly in order; a fan-out step runs its per-node subtasks
    concurrently under a semaphore.
  - A step (or a fan-out subtask) is retried with exponential backoff only
    when the step allows it and the failure is retryable.
  - On failure the pipeline stops, rolls back completed reversible steps in
    reverse order (best effort, logged) and raises ``PipelineStepError``
    naming the step, the node, and the progress made so far.

The pipeline never cancels a step part-way; re-running the operation is the
recovery path.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from netforge.errors import NetforgeError, PipelineStepError
from netforge.systems.pipeline.types import (
    PipelineResult,
    Step,
    StepOutcome,
    StepStatus,
    SubTask,
)

logger = structlog.get_logger("netforge.pipeline")

_BACKOFF_MAX_S = 30.0


class _StepFailed(Exception):
    def __init__(
        self,
        cause: BaseException,
        node_id: str | None,
        attempts: int,
        nodes_completed: list[str],
    ) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.node_id = node_id
        self.attempts = attempts
        self.nodes_completed = nodes_completed


def is_retryable(exc: BaseException) -> bool:
    """I/O-class failures are retryable; Netforge errors say so themselves."""
    if isinstance(exc, NetforgeError):
        return exc.retryable
    return isinstance(exc, (OSError, TimeoutError))


class TaskPipeline:
    """
    An ordered, partially parallel sequence of steps.

    ``concurrency`` bounds fan-out steps that do not set their own.
    """

    def __init__(self, name: str, steps: Sequence[Step], *, concurrency: int = 4) -> None:
        names = [s.name for s in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"pipeline {name!r} has duplicate step names: {names}")
        self.name = name
        self.steps = list(steps)
        self._concurrency = max(concurrency, 1)
        self._logger = logger.bind(system="pipeline", pipeline=name)

    async def run(self, context: Any = None) -> PipelineResult:
        start = time.monotonic()
        outcomes: list[StepOutcome] = []
        nodes_completed: dict[str, list[str]] = {}

        for index, step in enumerate(self.steps):
            if step.skip is not None and step.skip(context):
                outcomes.append(StepOutcome(
                    step_index=index, name=step.name, status=StepStatus.SKIPPED,
                ))
                self._logger.info("pipeline_step_skipped", step=step.name)
                continue

            self._logger.info("pipeline_step_started", step=step.name, index=index)
            step_start = time.monotonic()
            try:
                attempts, done = await self._run_step(step, context)
            except _StepFailed as failure:
                duration_ms = int((time.monotonic() - step_start) * 1000)
                if failure.nodes_completed:
                    nodes_completed[step.name] = failure.nodes_completed
                outcomes.append(StepOutcome(
                    step_index=index,
                    name=step.name,
                    status=StepStatus.FAILED,
                    attempts=failure.attempts,
                    duration_ms=duration_ms,
                    nodes_completed=failure.nodes_completed,
                    error=f"{type(failure.cause).__name__}: {failure.cause}",
                ))
                self._logger.error(
                    "pipeline_step_failed",
                    step=step.name,
                    node_id=failure.node_id,
                    attempts=failure.attempts,
                    error=str(failure.cause),
                )
                completed = [o.name for o in outcomes if o.status == StepStatus.SUCCESS]
                await self._rollback_completed(self.steps, outcomes, context)
                raise PipelineStepError(
                    step.name,
                    failure.cause,
                    node_id=failure.node_id,
                    completed_steps=completed,
                    nodes_completed=nodes_completed,
                ) from failure.cause

            duration_ms = int((time.monotonic() - step_start) * 1000)
            if step.fan_out is not None:
                nodes_completed[step.name] = done
            outcomes.append(StepOutcome(
                step_index=index,
                name=step.name,
                status=StepStatus.SUCCESS,
                attempts=attempts,
                duration_ms=duration_ms,
                nodes_completed=done,
            ))
            self._logger.info(
                "pipeline_step_complete",
                step=step.name,
                attempts=attempts,
                duration_ms=duration_ms,
            )

        result = PipelineResult(
            pipeline=self.name,
            success=True,
            step_outcomes=outcomes,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        self._logger.info(
            "pipeline_complete",
            steps=len(outcomes),
            duration_ms=result.duration_ms,
        )
        return result

    # ─── Step Execution ───────────────────────────────────────────

    async def _run_step(self, step: Step, context: Any) -> tuple[int, list[str]]:
        if step.action is not None:
            action = step.action
            attempts = await self._with_retry(step, lambda: action(context))
            return attempts, []

        assert step.fan_out is not None
        subtasks = list(step.fan_out(context))
        semaphore = asyncio.Semaphore(step.concurrency or self._concurrency)

        async def _bounded(task: SubTask) -> int:
            async with semaphore:
                return await self._with_retry(step, task.run, node_id=task.node_id)

        results = await asyncio.gather(
            *(_bounded(t) for t in subtasks),
            return_exceptions=True,
        )

        done = [t.node_id for t, r in zip(subtasks, results) if not isinstance(r, BaseException)]
        attempts = max((r for r in results if isinstance(r, int)), default=0)
        for task, r in zip(subtasks, results):
            if isinstance(r, _StepFailed):
                r.nodes_completed = done
                raise r
            if isinstance(r, BaseException):
                raise _StepFailed(r, task.node_id, 1, done)
        return attempts, done

    async def _with_retry(
        self,
        step: Step,
        run: Callable[[], Awaitable[Any]],
        node_id: str | None = None,
    ) -> int:
        """Run with retries; returns the number of attempts taken."""
        max_attempts = step.max_attempts if step.retryable else 1
        attempt = 0
        while True:
            attempt += 1
            try:
                if step.timeout_s is not None:
                    await asyncio.wait_for(run(), timeout=step.timeout_s)
                else:
                    await run()
                return attempt
            except Exception as exc:
                if attempt >= max_attempts or not is_retryable(exc):
                    raise _StepFailed(exc, node_id, attempt, []) from exc
                delay = min(step.backoff_s * (2 ** (attempt - 1)), _BACKOFF_MAX_S)
                self._logger.warning(
                    "pipeline_step_retry",
                    step=step.name,
                    node_id=node_id,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

    async def _rollback_completed(
        self,
        steps: list[Step],
        outcomes: list[StepOutcome],
        context: Any,
    ) -> None:
        """
        Roll back completed steps in reverse order (most recent first).
        Best-effort: a failing rollback is logged and the next one still runs.
        """
        by_name = {s.name: s for s in steps}
        for outcome in reversed(outcomes):
            if outcome.status != StepStatus.SUCCESS:
                continue
            step = by_name[outcome.name]
            if step.rollback is None:
                continue
            try:
                await step.rollback(context)
                outcome.status = StepStatus.ROLLED_BACK
                self._logger.info("pipeline_step_rolled_back", step=step.name)
            except Exception as exc:
                self._logger.error(
                    "rollback_failed",
                    step=step.name,
                    error=str(exc),
                )
