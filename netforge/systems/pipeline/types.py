"""
Netforge -- Pipeline Types

Step descriptors and the recorded outcome of a pipeline run.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import Field

from netforge.primitives.common import NetforgeBaseModel

StepAction = Callable[[Any], Awaitable[Any]]


class StepStatus(enum.StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class SubTask:
    """One node's share of a fan-out step."""

    node_id: str
    run: Callable[[], Awaitable[Any]]


@dataclass
class Step:
    """
    A named unit of work in a pipeline.

    Exactly one of ``action`` (runs once with the pipeline context) or
    ``fan_out`` (returns per-node subtasks run concurrently) must be set.
    ``retryable`` allows retries when the failure itself is retryable;
    ``rollback`` undoes the step if a later step fails.
    """

    name: str
    action: StepAction | None = None
    fan_out: Callable[[Any], Sequence[SubTask]] | None = None
    retryable: bool = False
    max_attempts: int = 3
    backoff_s: float = 0.5
    skip: Callable[[Any], bool] | None = None
    rollback: StepAction | None = None
    concurrency: int | None = None
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        if (self.action is None) == (self.fan_out is None):
            raise ValueError(f"step {self.name!r} needs exactly one of action or fan_out")
        if self.max_attempts < 1:
            raise ValueError(f"step {self.name!r}: max_attempts must be at least 1")

    @property
    def reversible(self) -> bool:
        return self.rollback is not None


class StepOutcome(NetforgeBaseModel):
    step_index: int
    name: str
    status: StepStatus
    attempts: int = 0
    duration_ms: int = 0
    nodes_completed: list[str] = Field(default_factory=list)
    error: str = ""


class PipelineResult(NetforgeBaseModel):
    pipeline: str
    success: bool
    step_outcomes: list[StepOutcome] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def completed_steps(self) -> list[str]:
        return [o.name for o in self.step_outcomes if o.status == StepStatus.SUCCESS]

    def outcome(self, name: str) -> StepOutcome | None:
        for o in self.step_outcomes:
            if o.name == name:
                return o
        return None
