"""
Queue Module - Task Store operations, Claim Engine and Maintenance
"""

from .errors import (
    QueueError,
    TaskValidationError,
    TaskNotFoundError,
    NonRetryableTaskError,
    TaskFailure,
)
from .api import (
    calculate_backoff_seconds,
    enqueue_task,
    get_task,
    list_tasks,
    get_queue_stats,
    cancel_task,
    complete_task,
    fail_task,
)
from .claim import claim_next_task
from .maintenance import (
    find_stuck_tasks,
    count_stuck_tasks,
    recover_stuck_tasks,
    cleanup_old_tasks,
)

__all__ = [
    # Errors
    "QueueError",
    "TaskValidationError",
    "TaskNotFoundError",
    "NonRetryableTaskError",
    "TaskFailure",
    # Queue API
    "calculate_backoff_seconds",
    "enqueue_task",
    "get_task",
    "list_tasks",
    "get_queue_stats",
    "cancel_task",
    "complete_task",
    "fail_task",
    # Claim Engine
    "claim_next_task",
    # Maintenance
    "find_stuck_tasks",
    "count_stuck_tasks",
    "recover_stuck_tasks",
    "cleanup_old_tasks",
]
