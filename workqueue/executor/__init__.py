"""
Executor Module - handler registry, task context and the worker loop
"""

from .registry import TaskHandler, TaskHandlerRegistry, load_registry
from .context import TaskContext
from .executor import (
    BatchReport,
    TaskExecutor,
    TaskOutcome,
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    OUTCOME_RETRYING,
)

__all__ = [
    "TaskHandler",
    "TaskHandlerRegistry",
    "load_registry",
    "TaskContext",
    "TaskExecutor",
    "TaskOutcome",
    "BatchReport",
    "OUTCOME_COMPLETED",
    "OUTCOME_FAILED",
    "OUTCOME_REJECTED",
    "OUTCOME_RETRYING",
]
