# tests/test_claim.py
"""
Test suite for the Claim Engine

Tests:
1. Priority ordering and FIFO within a priority band
2. scheduled_for is respected
3. No double-claim across concurrent claimers
4. A full lifecycle from enqueue to completion
"""

import threading
from datetime import timedelta

import pytest

from workqueue.models import TaskStatus, utcnow
from workqueue.queue import (
    cancel_task,
    claim_next_task,
    complete_task,
    enqueue_task,
    fail_task,
    get_queue_stats,
    get_task,
)
from workqueue.queue.claim import next_eligible_task_query


class TestClaimOrdering:
    """Tests for which task a claim returns"""

    def test_empty_queue_returns_none(self, db_session):
        assert claim_next_task(db_session) is None

    def test_priority_beats_enqueue_order(self, db_session):
        base = utcnow() - timedelta(minutes=1)
        for offset, priority in enumerate(["low", "critical", "normal"]):
            enqueue_task(
                db_session, type="index", payload={"p": priority}, workspace_id="ws-1",
                priority=priority, now=base + timedelta(seconds=offset),
            )

        claimed = [claim_next_task(db_session).priority for _ in range(3)]

        assert claimed == ["critical", "normal", "low"]

    def test_high_between_critical_and_normal(self, db_session, make_task):
        make_task(priority="normal")
        make_task(priority="high")
        make_task(priority="critical")

        assert [claim_next_task(db_session).priority for _ in range(3)] == [
            "critical", "high", "normal"
        ]

    def test_fifo_within_priority(self, db_session):
        base = utcnow() - timedelta(minutes=1)
        first = enqueue_task(db_session, type="index", payload={}, workspace_id="ws-1", now=base)
        second = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            now=base + timedelta(seconds=1),
        )

        assert claim_next_task(db_session).id == first.id
        assert claim_next_task(db_session).id == second.id

    def test_claim_marks_running(self, db_session, make_task):
        task = make_task()
        now = utcnow()

        claimed = claim_next_task(db_session, now=now)

        assert claimed.id == task.id
        assert claimed.status == TaskStatus.RUNNING.value
        assert claimed.started_at == now
        assert get_task(db_session, task.id).status == TaskStatus.RUNNING.value

    def test_running_task_not_claimed_again(self, db_session, make_task):
        make_task()
        assert claim_next_task(db_session) is not None
        assert claim_next_task(db_session) is None


class TestScheduledFor:
    """A task is never claimed before its scheduled time"""

    def test_future_task_waits(self, db_session):
        now = utcnow()
        later = now + timedelta(minutes=5)
        task = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1",
            scheduled_for=later, now=now,
        )

        assert claim_next_task(db_session, now=now) is None
        assert claim_next_task(db_session, now=later - timedelta(seconds=1)) is None
        assert claim_next_task(db_session, now=later).id == task.id

    def test_due_task_of_lower_priority_beats_future_critical(self, db_session):
        now = utcnow()
        enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1", priority="critical",
            scheduled_for=now + timedelta(minutes=5), now=now,
        )
        due = enqueue_task(
            db_session, type="index", payload={}, workspace_id="ws-1", priority="low", now=now,
        )

        assert claim_next_task(db_session, now=now).id == due.id


class TestNoDoubleClaim:
    """Concurrent claimers never receive the same task"""

    def test_query_requests_skip_locked(self):
        stmt = next_eligible_task_query(utcnow())
        assert stmt._for_update_arg is not None
        assert stmt._for_update_arg.skip_locked is True

    @pytest.mark.slow
    def test_concurrent_claimers(self, session_factory):
        total_tasks = 20
        with session_factory() as db:
            for i in range(total_tasks):
                enqueue_task(db, type="index", payload={"i": i}, workspace_id="ws-1")

        claimed = []
        errors = []
        lock = threading.Lock()
        start = threading.Barrier(4)

        def worker():
            try:
                start.wait()
                with session_factory() as db:
                    while True:
                        task = claim_next_task(db)
                        if task is None:
                            return
                        with lock:
                            claimed.append(task.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert len(claimed) == total_tasks
        assert len(set(claimed)) == total_tasks

        with session_factory() as db:
            assert get_queue_stats(db)["running"] == total_tasks


class TestLifecycle:
    """End-to-end: enqueue, claim, fail with backoff, reclaim, complete"""

    def test_enqueue_to_completion(self, db_session):
        now = utcnow()
        task = enqueue_task(
            db_session, type="index", payload={"documentId": "doc-1"}, workspace_id="ws-1",
            priority="high", max_retries=2, now=now,
        )
        other = enqueue_task(db_session, type="index", payload={}, workspace_id="ws-1", now=now)
        cancel_task(db_session, other.id)

        claimed = claim_next_task(db_session, now=now)
        assert claimed.id == task.id

        retried = fail_task(db_session, task.id, "embedding service unavailable", now=now)
        assert retried.status == TaskStatus.PENDING.value
        assert retried.retries == 1

        # Nothing else is eligible while the only live task backs off
        assert claim_next_task(db_session, now=now) is None

        later = retried.scheduled_for
        reclaimed = claim_next_task(db_session, now=later)
        assert reclaimed.id == task.id

        done = complete_task(db_session, task.id, {"chunks": 7}, now=later)
        assert done.status == TaskStatus.COMPLETED.value
        assert done.retries == 1
        assert done.result == {"chunks": 7}
        assert done.error == "embedding service unavailable"

        stats = get_queue_stats(db_session, workspace_id="ws-1")
        assert stats["completed"] == 1
        assert stats["cancelled"] == 1
        assert stats["pending"] == 0

    def test_lower_priority_runs_while_higher_backs_off(self, db_session):
        t0 = utcnow() - timedelta(minutes=1)
        high = enqueue_task(
            db_session, type="index-document", payload={"documentId": "doc-1"},
            workspace_id="ws-1", priority="high", now=t0,
        )
        t1 = t0 + timedelta(seconds=1)
        normal = enqueue_task(
            db_session, type="index-document", payload={"documentId": "doc-2"},
            workspace_id="ws-1", priority="normal", now=t1,
        )

        assert claim_next_task(db_session, now=t1).id == high.id

        retried = fail_task(db_session, high.id, "parse error", now=t1)
        assert retried.status == TaskStatus.PENDING.value
        assert retried.retries == 1
        assert retried.scheduled_for == t1 + timedelta(seconds=1)

        assert claim_next_task(db_session, now=t1).id == normal.id
        assert claim_next_task(db_session, now=t1) is None

        reclaimed = claim_next_task(db_session, now=retried.scheduled_for)
        assert reclaimed.id == high.id
        assert reclaimed.retries == 1
