# workqueue/queue/api.py
"""
Queue API - enqueue, cancel, query and resolve background tasks

Every function takes an explicit SQLAlchemy session; mutating functions
commit their own transaction. Status transitions out of ``running`` are
guarded updates (``WHERE status IN (...)``) so a stale in-memory copy can
never overwrite a row another worker or a cancel has already moved on.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workqueue.config import settings
from workqueue.models import (
    MAX_RETRIES_LIMIT,
    MAX_TIMEOUT_MS,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from .errors import TaskNotFoundError, TaskValidationError

logger = logging.getLogger("workqueue.queue")

MAX_ERROR_LENGTH = 2000
MAX_LIST_LIMIT = 500

StatusFilter = Union[str, TaskStatus, Iterable[Union[str, TaskStatus]], None]


def calculate_backoff_seconds(retries: int) -> int:
    """
    Exponential backoff delay for the next attempt.
    backoff_seconds = 2 ** retries, where retries is the count *before* this failure,
    so the first retry waits 1s, then 2s, 4s, ...
    """
    return 2 ** retries


def commit_or_rollback(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def _reload(db: Session, task_id: str) -> Optional[Task]:
    return db.get(Task, task_id, populate_existing=True)


def _normalize_statuses(status: StatusFilter) -> List[str]:
    if status is None:
        return []
    if isinstance(status, (str, TaskStatus)):
        status = [status]
    values = []
    for item in status:
        try:
            values.append(TaskStatus(item).value)
        except ValueError:
            raise TaskValidationError("status", f"unknown status {item!r}")
    return values


# =============================================================================
# Enqueue
# =============================================================================

def enqueue_task(
    db: Session,
    *,
    type: str,
    payload: Optional[Mapping[str, Any]],
    workspace_id: str,
    priority: Union[str, TaskPriority] = TaskPriority.NORMAL,
    scheduled_for: Optional[datetime] = None,
    max_retries: Optional[int] = None,
    timeout_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Task:
    """
    Insert a new pending task. Never runs the handler.

    Raises:
        TaskValidationError: before touching the store, if any parameter is invalid
    """
    if not type or not str(type).strip():
        raise TaskValidationError("type", "task type is required")
    if not workspace_id or not str(workspace_id).strip():
        raise TaskValidationError("workspace_id", "workspace id is required")
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise TaskValidationError("payload", "payload must be a mapping")
    try:
        priority = TaskPriority(priority)
    except ValueError:
        raise TaskValidationError("priority", f"unknown priority {priority!r}")

    if max_retries is None:
        max_retries = settings.TASK_DEFAULT_MAX_RETRIES
    if timeout_ms is None:
        timeout_ms = settings.TASK_DEFAULT_TIMEOUT_MS
    if (
        isinstance(max_retries, bool)
        or not isinstance(max_retries, int)
        or not 0 <= max_retries <= MAX_RETRIES_LIMIT
    ):
        raise TaskValidationError(
            "max_retries", f"must be an integer between 0 and {MAX_RETRIES_LIMIT}"
        )
    if (
        isinstance(timeout_ms, bool)
        or not isinstance(timeout_ms, int)
        or not 0 < timeout_ms <= MAX_TIMEOUT_MS
    ):
        raise TaskValidationError(
            "timeout_ms", f"must be a positive integer no greater than {MAX_TIMEOUT_MS}"
        )

    if scheduled_for is not None and scheduled_for.tzinfo is not None:
        scheduled_for = scheduled_for.astimezone(timezone.utc).replace(tzinfo=None)

    now = now or utcnow()
    task = Task(
        id=str(uuid.uuid4()),
        type=str(type).strip(),
        payload=dict(payload),
        workspace_id=str(workspace_id).strip(),
        status=TaskStatus.PENDING.value,
        priority=priority.value,
        scheduled_for=scheduled_for or now,
        retries=0,
        max_retries=max_retries,
        timeout_ms=timeout_ms,
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    commit_or_rollback(db)

    logger.info(
        f"Task enqueued | task_id={task.id} | type={task.type} | "
        f"workspace={task.workspace_id} | priority={task.priority} | "
        f"scheduled_for={task.scheduled_for.isoformat()}"
    )
    return task


# =============================================================================
# Queries
# =============================================================================

def get_task(db: Session, task_id: str) -> Task:
    """Load a task by id, raising TaskNotFoundError when it does not exist"""
    task = _reload(db, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def list_tasks(
    db: Session,
    workspace_id: str,
    status: StatusFilter = None,
    type: Optional[str] = None,
    limit: int = 50,
) -> List[Task]:
    """Tasks of one workspace, newest first, filtered by status(es) and type"""
    statuses = _normalize_statuses(status)
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))

    stmt = select(Task).where(Task.workspace_id == workspace_id)
    if statuses:
        stmt = stmt.where(Task.status.in_(statuses))
    if type:
        stmt = stmt.where(Task.type == type)
    stmt = stmt.order_by(Task.created_at.desc(), Task.id.desc()).limit(limit)

    return list(db.execute(stmt).scalars().all())


def get_queue_stats(
    db: Session,
    workspace_id: Optional[str] = None,
    stuck_threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Aggregate task counts by status, globally or for one workspace.

    Returns pending/running/completed/failed/cancelled, total, and the number
    of stuck tasks (running longer than the stuck threshold).
    """
    if stuck_threshold_minutes is None:
        stuck_threshold_minutes = settings.STUCK_TASK_THRESHOLD_MINUTES
    now = now or utcnow()

    stmt = select(Task.status, func.count(Task.id)).group_by(Task.status)
    if workspace_id:
        stmt = stmt.where(Task.workspace_id == workspace_id)

    stats = {status.value: 0 for status in TaskStatus}
    for status, count in db.execute(stmt).all():
        if status in stats:
            stats[status] = int(count)
    stats["total"] = sum(stats.values())

    stuck_stmt = select(func.count(Task.id)).where(
        Task.status == TaskStatus.RUNNING.value,
        Task.started_at < now - timedelta(minutes=stuck_threshold_minutes),
    )
    if workspace_id:
        stuck_stmt = stuck_stmt.where(Task.workspace_id == workspace_id)
    stats["stuck"] = int(db.execute(stuck_stmt).scalar_one())

    return stats


# =============================================================================
# Cancel
# =============================================================================

def cancel_task(db: Session, task_id: str, now: Optional[datetime] = None) -> Optional[Task]:
    """
    Cancel a task. Returns the task, or None when the id is unknown.

    - pending   -> cancelled (never claimed afterwards)
    - running   -> cancelled; advisory only, the handler is not interrupted and
                   its late Complete/Fail is rejected
    - cancelled / completed / failed -> unchanged, no error
    """
    now = now or utcnow()
    result = db.execute(
        update(Task)
        .where(
            Task.id == task_id,
            Task.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
        )
        .values(status=TaskStatus.CANCELLED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    commit_or_rollback(db)

    task = _reload(db, task_id)
    if task is None:
        logger.warning(f"Cancel requested for unknown task {task_id}")
        return None

    if result.rowcount:
        logger.info(f"Task {task_id} cancelled")
    else:
        logger.debug(f"Cancel is a no-op for task {task_id} (status={task.status})")
    return task


# =============================================================================
# Resolution (Complete / Fail)
# =============================================================================

def complete_task(
    db: Session,
    task_id: str,
    result: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    claimed_at: Optional[datetime] = None,
) -> Optional[Task]:
    """
    Mark a running task completed and store its result.

    Completing an already completed task overwrites the result. A task that
    is no longer running (cancelled, failed, requeued) is left untouched and
    None is returned. Passing ``claimed_at`` (the started_at of the claim)
    also rejects a resolution from a claim that has since been superseded.
    """
    now = now or utcnow()
    conditions = [
        Task.id == task_id,
        Task.status.in_([TaskStatus.RUNNING.value, TaskStatus.COMPLETED.value]),
    ]
    if claimed_at is not None:
        conditions.append(Task.started_at == claimed_at)

    res = db.execute(
        update(Task)
        .where(*conditions)
        .values(
            status=TaskStatus.COMPLETED.value,
            completed_at=now,
            result=dict(result) if result is not None else None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    commit_or_rollback(db)

    if not res.rowcount:
        current = _reload(db, task_id)
        logger.warning(
            f"Complete rejected for task {task_id} | "
            f"status={current.status if current else 'NOT FOUND'}"
        )
        return None

    logger.info(f"Task {task_id} completed")
    return _reload(db, task_id)


def fail_task(
    db: Session,
    task_id: str,
    error_message: str,
    retryable: bool = True,
    now: Optional[datetime] = None,
    claimed_at: Optional[datetime] = None,
) -> Optional[Task]:
    """
    Record a failed attempt.

    - retries < max_retries: retries += 1, back to pending, scheduled_for =
      now + 2 ** (retries before this failure) seconds
    - retries >= max_retries (or retryable=False): permanently failed

    A task that is no longer running (cancelled, requeued, terminal) is left
    untouched and None is returned.
    """
    now = now or utcnow()
    error_message = (error_message or "Unknown error")[:MAX_ERROR_LENGTH]

    task = _reload(db, task_id)
    if task is None:
        logger.warning(f"Fail requested for unknown task {task_id}")
        return None

    observed_status = task.status
    if observed_status != TaskStatus.RUNNING.value:
        logger.warning(f"Fail rejected for task {task_id} | status={observed_status}")
        return None
    if claimed_at is not None and task.started_at != claimed_at:
        logger.warning(f"Fail rejected for task {task_id} | claim superseded")
        return None

    current_retries = task.retries or 0
    if retryable and current_retries < task.max_retries:
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
        backoff_seconds = None
        values = dict(
            status=TaskStatus.FAILED.value,
            error=error_message,
            updated_at=now,
        )

    # Compare-and-swap against the state we read
    res = db.execute(
        update(Task)
        .where(
            Task.id == task_id,
            Task.status == observed_status,
            Task.retries == current_retries,
            Task.started_at == task.started_at,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    commit_or_rollback(db)

    if not res.rowcount:
        logger.warning(f"Fail lost a concurrent update for task {task_id}; leaving row as is")
        return None

    if backoff_seconds is not None:
        logger.info(
            f"Task {task_id} failed - retry scheduled | "
            f"retry={current_retries + 1}/{task.max_retries} | "
            f"backoff={backoff_seconds}s | error={error_message[:200]}"
        )
    else:
        logger.warning(
            f"Task {task_id} failed permanently | "
            f"retries={current_retries}/{task.max_retries} | "
            f"retryable={retryable} | error={error_message[:200]}"
        )
    return _reload(db, task_id)
