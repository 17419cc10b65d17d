# workqueue/queue/claim.py
"""
Claim Engine - atomically pick the next eligible task and mark it running

Selection:   status = 'pending' AND scheduled_for <= now
Order:       priority weight DESC (critical=4 .. low=1), created_at ASC
Locking:     SELECT ... FOR UPDATE SKIP LOCKED, so concurrent claimers move
             past rows another transaction holds instead of blocking on them
Transition:  UPDATE ... SET status='running' WHERE id=:id AND status='pending'

The guarded UPDATE is the compare-and-swap that keeps engines without row
locks (SQLite) correct: a claimer that loses the race sees rowcount == 0 and
tries the next candidate. The transaction is committed before returning, so
no lock is held while the handler runs.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workqueue.models import PRIORITY_WEIGHTS, Task, TaskStatus, utcnow

logger = logging.getLogger("workqueue.claim")

CLAIM_MAX_ATTEMPTS = 5

priority_weight = case(
    {priority.value: weight for priority, weight in PRIORITY_WEIGHTS.items()},
    value=Task.priority,
    else_=0,
)


def next_eligible_task_query(now: datetime):
    """Locking select of the single next eligible task id"""
    return (
        select(Task.id)
        .where(
            Task.status == TaskStatus.PENDING.value,
            Task.scheduled_for <= now,
        )
        .order_by(priority_weight.desc(), Task.created_at.asc(), Task.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )


def claim_next_task(
    db: Session,
    now: Optional[datetime] = None,
    max_attempts: int = CLAIM_MAX_ATTEMPTS,
) -> Optional[Task]:
    """
    Claim one eligible task for the caller.

    Returns:
        The claimed Task (status running, started_at set), or None when no
        task is currently available. Store errors propagate after rollback.
    """
    now = now or utcnow()

    for attempt in range(1, max_attempts + 1):
        try:
            task_id = db.execute(next_eligible_task_query(now)).scalar_one_or_none()
            if task_id is None:
                db.commit()
                logger.debug("No task available")
                return None

            result = db.execute(
                update(Task)
                .where(
                    Task.id == task_id,
                    Task.status == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Claim failed: {e}")
            raise

        if result.rowcount == 1:
            task = db.get(Task, task_id, populate_existing=True)
            logger.info(
                f"Claimed task {task.id} | type={task.type} | priority={task.priority} | "
                f"attempt={task.retries + 1}/{task.max_retries + 1}"
            )
            return task

        logger.debug(f"Lost claim race for task {task_id} (attempt {attempt}/{max_attempts})")

    logger.info(f"Claim gave up after {max_attempts} contended attempts")
    return None
