"""
Netforge -- Task Pipeline

Named, ordered, partially parallel steps with retry, skip and rollback.

Public interface:
  TaskPipeline    -- runs steps against a context
  Step / SubTask  -- step descriptors
  PipelineResult  -- per-step outcomes of a successful run
"""

from netforge.systems.pipeline.pipeline import TaskPipeline, is_retryable
from netforge.systems.pipeline.types import (
    PipelineResult,
    Step,
    StepOutcome,
    StepStatus,
    SubTask,
)

__all__ = [
    "TaskPipeline",
    "is_retryable",
    "Step",
    "SubTask",
    "StepOutcome",
    "StepStatus",
    "PipelineResult",
]
