# workqueue/executor/context.py
import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from workqueue.models import Task, TaskStatus

logger = logging.getLogger("workqueue.task")


class TaskContext:
    """
    Per-attempt context handed to a task handler.

    check_cancelled() is the cooperative cancellation hook: it turns True once
    the attempt has exceeded its timeout, or once the task row is no longer
    ``running`` (cancelled, or requeued by stuck-task recovery).
    """

    def __init__(self, task: Task, session_factory: sessionmaker):
        self.task_id: str = task.id
        self.type: str = task.type
        self.workspace_id: str = task.workspace_id
        self.attempt: int = (task.retries or 0) + 1
        self.timeout_ms: int = task.timeout_ms
        self.progress: float = 0.0
        self.progress_message: Optional[str] = None

        self._session_factory = session_factory
        self._started = time.monotonic()
        self._timed_out = False

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000

    def log(self, message: str) -> None:
        logger.info(f"[Task {self.task_id}] {message}")

    def update_progress(self, progress: float, message: Optional[str] = None) -> None:
        self.progress = max(0.0, min(100.0, float(progress)))
        self.progress_message = message
        logger.debug(
            f"[Task {self.task_id}] Progress: {self.progress:.0f}%"
            + (f" - {message}" if message else "")
        )

    def mark_timed_out(self) -> None:
        self._timed_out = True

    def check_cancelled(self) -> bool:
        if self._timed_out:
            return True
        with self._session_factory() as db:
            status = db.execute(
                select(Task.status).where(Task.id == self.task_id)
            ).scalar_one_or_none()
        return status != TaskStatus.RUNNING.value

