# tests/test_maintenance.py
"""
Test suite for Maintenance: stuck task detection/recovery and cleanup
"""

from datetime import timedelta

import pytest

from workqueue.models import TaskStatus, utcnow
from workqueue.queue import (
    TaskNotFoundError,
    cancel_task,
    claim_next_task,
    cleanup_old_tasks,
    complete_task,
    count_stuck_tasks,
    enqueue_task,
    fail_task,
    find_stuck_tasks,
    get_task,
    recover_stuck_tasks,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def stuck_task(db_session):
    """A task claimed 30 minutes ago whose worker never resolved it"""
    claimed_at = utcnow() - timedelta(minutes=30)
    task = enqueue_task(
        db_session, type="index", payload={}, workspace_id="ws-1",
        timeout_ms=60000, now=claimed_at,
    )
    claim_next_task(db_session, now=claimed_at)
    return task.id


@pytest.fixture
def max_retry_task(db_session):
    """A stuck task that has already used all of its retries"""
    claimed_at = utcnow() - timedelta(minutes=30)
    task = enqueue_task(
        db_session, type="index", payload={}, workspace_id="ws-1",
        max_retries=0, timeout_ms=60000, now=claimed_at,
    )
    claim_next_task(db_session, now=claimed_at)
    return task.id


# =============================================================================
# Test: Stuck Task Detection and Recovery
# =============================================================================

class TestStuckTaskDetection:
    """Tests for detecting stuck tasks"""

    def test_stuck_task_found(self, db_session, stuck_task):
        assert [t.id for t in find_stuck_tasks(db_session, 10)] == [stuck_task]
        assert count_stuck_tasks(db_session, 10) == 1

    def test_recent_running_task_not_stuck(self, db_session, make_task):
        make_task()
        claim_next_task(db_session)

        assert find_stuck_tasks(db_session, 10) == []
        assert count_stuck_tasks(db_session, 10) == 0

    def test_old_pending_task_not_stuck(self, db_session):
        enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            now=utcnow() - timedelta(hours=2),
        )
        assert count_stuck_tasks(db_session, 10) == 0


class TestStuckTaskRecovery:
    """Tests for requeueing stuck tasks"""

    def test_stuck_task_requeued_with_backoff(self, db_session, stuck_task):
        now = utcnow()

        result = recover_stuck_tasks(db_session, 10, now=now)

        assert result == {"retried": 1, "failed": 0}
        task = get_task(db_session, stuck_task)
        assert task.status == TaskStatus.PENDING.value
        assert task.retries == 1
        assert task.started_at is None
        assert task.scheduled_for == now + timedelta(seconds=1)
        assert "stuck" in task.error

    def test_max_retries_marks_task_failed(self, db_session, max_retry_task):
        result = recover_stuck_tasks(db_session, 10)

        assert result == {"retried": 0, "failed": 1}
        assert get_task(db_session, max_retry_task).status == TaskStatus.FAILED.value

    def test_task_within_its_own_timeout_not_requeued(self, db_session):
        claimed_at = utcnow() - timedelta(minutes=30)
        task = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            timeout_ms=60 * 60 * 1000, now=claimed_at,
        )
        claim_next_task(db_session, now=claimed_at)

        assert count_stuck_tasks(db_session, 10) == 1
        assert recover_stuck_tasks(db_session, 10) == {"retried": 0, "failed": 0}
        assert get_task(db_session, task.id).status == TaskStatus.RUNNING.value

    def test_late_resolution_from_original_worker_rejected(self, db_session, stuck_task):
        original = get_task(db_session, stuck_task)
        original_claim = original.started_at

        recover_stuck_tasks(db_session, 10)
        reclaimed = claim_next_task(db_session, now=utcnow() + timedelta(seconds=5))
        assert reclaimed.id == stuck_task

        assert complete_task(db_session, stuck_task, {"late": True}, claimed_at=original_claim) is None
        assert fail_task(db_session, stuck_task, "late", claimed_at=original_claim) is None
        assert get_task(db_session, stuck_task).status == TaskStatus.RUNNING.value

    def test_multiple_stuck_tasks_processed(self, db_session):
        claimed_at = utcnow() - timedelta(minutes=30)
        for _ in range(3):
            enqueue_task(
                db_session, type="index", payload={}, workspace_id="ws-1",
                timeout_ms=60000, now=claimed_at,
            )
            claim_next_task(db_session, now=claimed_at)

        assert recover_stuck_tasks(db_session, 10) == {"retried": 3, "failed": 0}
        assert count_stuck_tasks(db_session, 10) == 0


# =============================================================================
# Test: Cleanup
# =============================================================================

class TestCleanup:
    """Cleanup removes only old terminal tasks"""

    def _terminal_tasks(self, db_session, at):
        completed = enqueue_task(db_session, type="index", payload={}, workspace_id="ws-1", now=at)
        claim_next_task(db_session, now=at)
        complete_task(db_session, completed.id, {}, now=at)

        failed = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1", max_retries=0, now=at
        )
        claim_next_task(db_session, now=at)
        fail_task(db_session, failed.id, "boom", now=at)

        cancelled = enqueue_task(db_session, type="index", payload={}, workspace_id="ws-1", now=at)
        cancel_task(db_session, cancelled.id, now=at)
        return [completed.id, failed.id, cancelled.id]

    def test_old_terminal_tasks_deleted(self, db_session):
        old_ids = self._terminal_tasks(db_session, utcnow() - timedelta(days=10))

        assert cleanup_old_tasks(db_session, 7) == 3
        for task_id in old_ids:
            with pytest.raises(TaskNotFoundError):
                get_task(db_session, task_id)
        assert cleanup_old_tasks(db_session, 7) == 0

    def test_recent_terminal_tasks_kept(self, db_session):
        self._terminal_tasks(db_session, utcnow() - timedelta(days=6))

        assert cleanup_old_tasks(db_session, 7) == 0

    def test_pending_and_running_never_deleted(self, db_session):
        ancient = utcnow() - timedelta(days=365)
        pending = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            priority="low", now=ancient,
        )
        running = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            priority="critical", now=ancient,
        )
        claim_next_task(db_session, now=ancient)

        assert cleanup_old_tasks(db_session, 0) == 0
        assert get_task(db_session, pending.id).status == TaskStatus.PENDING.value
        assert get_task(db_session, running.id).status == TaskStatus.RUNNING.value

    def test_negative_retention_rejected(self, db_session):
        with pytest.raises(ValueError):
            cleanup_old_tasks(db_session, -1)
