# workqueue/queue/maintenance.py
"""
Maintenance - stuck task detection/recovery and retention cleanup
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from workqueue.config import settings
from workqueue.models import TERMINAL_STATUSES, Task, TaskStatus, utcnow
from .api import MAX_ERROR_LENGTH, commit_or_rollback, calculate_backoff_seconds

logger = logging.getLogger("workqueue.maintenance")


def _stuck_filter(threshold_minutes: int, now: datetime):
    return (
        Task.status == TaskStatus.RUNNING.value,
        Task.started_at.isnot(None),
        Task.started_at < now - timedelta(minutes=threshold_minutes),
    )


def find_stuck_tasks(
    db: Session,
    threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Task]:
    """Running tasks whose started_at is older than the threshold"""
    if threshold_minutes is None:
        threshold_minutes = settings.STUCK_TASK_THRESHOLD_MINUTES
    now = now or utcnow()

    stmt = select(Task).where(*_stuck_filter(threshold_minutes, now)).order_by(Task.started_at.asc())
    return list(db.execute(stmt).scalars().all())


def count_stuck_tasks(
    db: Session,
    threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    if threshold_minutes is None:
        threshold_minutes = settings.STUCK_TASK_THRESHOLD_MINUTES
    now = now or utcnow()

    stmt = select(func.count(Task.id)).where(*_stuck_filter(threshold_minutes, now))
    return int(db.execute(stmt).scalar_one())


def recover_stuck_tasks(
    db: Session,
    threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Requeue stuck tasks, counting the lost attempt as a failure.

    A task is recovered only once it is past both the stuck threshold and
    its own timeout_ms. For each recovered task:
    - If retries < max_retries: retries += 1, back to pending with backoff
    - Otherwise: mark as failed

    The update is guarded on the started_at we observed, so a worker that
    resolves or re-claims the task concurrently always wins.
    """
    if threshold_minutes is None:
        threshold_minutes = settings.STUCK_TASK_THRESHOLD_MINUTES
    now = now or utcnow()

    retried_count = 0
    failed_count = 0

    for task in find_stuck_tasks(db, threshold_minutes, now):
        age_seconds = (now - task.started_at).total_seconds()
        if age_seconds * 1000 < task.timeout_ms:
            # Still inside its own timeout budget; only reported, never requeued
            continue
        age_minutes = age_seconds / 60
        logger.warning(
            f"Stuck task detected: {task.id} | type={task.type} | "
            f"started_at={task.started_at.isoformat()} | age_minutes={age_minutes:.1f}"
        )

        error_message = f"Task stuck in running for more than {threshold_minutes} minutes"[:MAX_ERROR_LENGTH]
        current_retries = task.retries or 0
        if current_retries < task.max_retries:
            backoff_seconds = calculate_backoff_seconds(current_retries)
            values = dict(
                status=TaskStatus.PENDING.value,
                retries=current_retries + 1,
                error=error_message,
                scheduled_for=now + timedelta(seconds=backoff_seconds),
                started_at=None,
                updated_at=now,
            )
        else:
            values = dict(
                status=TaskStatus.FAILED.value,
                error=error_message,
                updated_at=now,
            )

        result = db.execute(
            update(Task)
            .where(
                Task.id == task.id,
                Task.status == TaskStatus.RUNNING.value,
                Task.started_at == task.started_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        commit_or_rollback(db)

        if not result.rowcount:
            logger.debug(f"Skipping task {task.id} - resolved concurrently")
            continue

        if values["status"] == TaskStatus.PENDING.value:
            retried_count += 1
            logger.info(
                f"Task {task.id} requeued after stuck detection | "
                f"retry={current_retries + 1}/{task.max_retries}"
            )
        else:
            failed_count += 1
            logger.warning(
                f"Task {task.id} failed - stuck with no retries left | "
                f"retries={current_retries}/{task.max_retries}"
            )

    if retried_count or failed_count:
        logger.info(f"Stuck task recovery complete | retried={retried_count} | failed={failed_count}")
    else:
        logger.debug("Stuck task recovery complete | no stuck tasks found")

    return {"retried": retried_count, "failed": failed_count}


def cleanup_old_tasks(
    db: Session,
    older_than_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete terminal tasks (completed, failed, cancelled) last updated more
    than ``older_than_days`` ago. Pending and running tasks are never touched.

    Returns:
        Number of deleted tasks
    """
    if older_than_days is None:
        older_than_days = settings.CLEANUP_RETENTION_DAYS
    if older_than_days < 0:
        raise ValueError("older_than_days must be >= 0")
    now = now or utcnow()
    cutoff = now - timedelta(days=older_than_days)

    result = db.execute(
        delete(Task)
        .where(
            Task.status.in_([s.value for s in TERMINAL_STATUSES]),
            Task.updated_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    commit_or_rollback(db)

    deleted = result.rowcount or 0
    logger.info(f"Cleanup complete | deleted={deleted} | older_than_days={older_than_days}")
    return deleted
