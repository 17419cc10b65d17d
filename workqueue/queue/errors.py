# workqueue/queue/errors.py
"""
Queue error taxonomy

- TaskValidationError: bad enqueue parameters, rejected before the store
- TaskNotFoundError: lookup of an unknown task id
- NonRetryableTaskError / TaskFailure: raised or returned by handlers
Infrastructure errors (sqlalchemy.exc.SQLAlchemyError) are not wrapped.
"""

from dataclasses import dataclass


class QueueError(Exception):
    """Base class for queue errors"""


class TaskValidationError(QueueError, ValueError):
    """Raised when enqueue parameters are invalid"""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class TaskNotFoundError(QueueError, LookupError):
    """Raised when a task id does not exist"""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class NonRetryableTaskError(Exception):
    """Raised by a handler to fail the task permanently, skipping retries"""


@dataclass
class TaskFailure:
    """Explicit failure value a handler may return instead of raising"""
    message: str
    retryable: bool = True
