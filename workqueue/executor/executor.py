# workqueue/executor/executor.py
"""
Task Executor - drives claimed tasks from claim to resolution

One invocation of process_pending_tasks():
1. Optionally requeues stuck tasks (worker crashed mid-task)
2. Claims up to N tasks, one at a time, stopping early when the queue drains
3. Dispatches each payload to the handler registered for its type, under a
   soft timeout of task.timeout_ms
4. Resolves the task: Complete on success, Fail on exception, TaskFailure,
   timeout or unknown type

Handler exceptions are always turned into a Fail. Store errors raised while
claiming or resolving propagate to the caller; the task keeps whatever state
it had (a task left running becomes a stuck task for maintenance).
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from sqlalchemy.orm import sessionmaker

from workqueue.config import settings
from workqueue.middleware import correlation_scope
from workqueue.models import SessionLocal, Task, TaskStatus
from workqueue.queue import (
    NonRetryableTaskError,
    TaskFailure,
    claim_next_task,
    complete_task,
    fail_task,
    get_queue_stats,
    recover_stuck_tasks,
)
from .context import TaskContext
from .registry import TaskHandler, TaskHandlerRegistry

logger = logging.getLogger("workqueue.executor")

# Outcome statuses
OUTCOME_COMPLETED = "completed"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"
OUTCOME_REJECTED = "rejected"  # Resolution refused, e.g. task cancelled while running


@dataclass
class TaskOutcome:
    """Result of executing one claimed task"""
    task_id: str
    type: str
    status: str
    duration_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "type": self.type,
            "status": self.status,
            "durationMs": round(self.duration_ms, 1),
            "error": self.error,
        }


@dataclass
class BatchReport:
    """Summary of one worker-trigger invocation"""
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    rejected: int = 0
    recovered: int = 0
    recovered_failed: int = 0
    queue: Dict[str, int] = field(default_factory=dict)
    outcomes: List[TaskOutcome] = field(default_factory=list)

    def record(self, outcome: TaskOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.status == OUTCOME_COMPLETED:
            self.succeeded += 1
        elif outcome.status == OUTCOME_RETRYING:
            self.retried += 1
        elif outcome.status == OUTCOME_FAILED:
            self.failed += 1
        else:
            self.rejected += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "rejected": self.rejected,
            "recovered": self.recovered,
            "recoveredFailed": self.recovered_failed,
            "queue": self.queue,
            "tasks": [o.to_dict() for o in self.outcomes],
        }


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__


def _normalize_result(result: Any) -> Optional[Dict[str, Any]]:
    """Coerce a handler return value into a JSON-storable mapping"""
    if result is None:
        return None
    if not isinstance(result, Mapping):
        result = {"value": result}
    return json.loads(json.dumps(dict(result), default=str))


def _discard_abandoned(task_id: str, run: "asyncio.Future") -> None:
    """Retrieve the outcome of a handler abandoned after its timeout"""
    if run.cancelled():
        return
    error = run.exception()
    if error is not None:
        logger.debug(f"Abandoned handler for task {task_id} raised {type(error).__name__}: {error}")


async def _invoke(handler: TaskHandler, payload: Dict[str, Any], context: TaskContext) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(payload, context)
    # Blocking handlers run in a worker thread; after a timeout the thread is
    # abandoned, not killed, and finishes on its own
    result = await asyncio.to_thread(handler, payload, context)
    if inspect.isawaitable(result):
        result = await result
    return result


class TaskExecutor:
    """Claims, dispatches and resolves tasks against one shared store"""

    def __init__(
        self,
        registry: TaskHandlerRegistry,
        session_factory: Optional[sessionmaker] = None,
        batch_size: Optional[int] = None,
        max_batch_size: Optional[int] = None,
        recover_stuck: Optional[bool] = None,
        stuck_threshold_minutes: Optional[int] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.TASK_BATCH_SIZE
        self.max_batch_size = max_batch_size or settings.TASK_MAX_BATCH_SIZE
        self.recover_stuck = (
            settings.STUCK_TASK_RECOVERY_ENABLED if recover_stuck is None else recover_stuck
        )
        self.stuck_threshold_minutes = (
            settings.STUCK_TASK_THRESHOLD_MINUTES
            if stuck_threshold_minutes is None
            else stuck_threshold_minutes
        )

    # =========================================================================
    # Single task
    # =========================================================================

    async def execute_task(self, task: Task) -> TaskOutcome:
        """Run the handler for a claimed task and resolve it"""
        with correlation_scope(f"task-{task.id[:8]}"):
            context = TaskContext(task, self.session_factory)
            handler = self.registry.get(task.type)

            if handler is None:
                return self._resolve_failure(
                    task, context, f"No handler registered for task type: {task.type}"
                )

            run = asyncio.ensure_future(_invoke(handler, dict(task.payload or {}), context))
            done, _ = await asyncio.wait({run}, timeout=task.timeout_ms / 1000)
            if not done:
                run.cancel()
                run.add_done_callback(lambda f, task_id=task.id: _discard_abandoned(task_id, f))
                context.mark_timed_out()
                logger.warning(f"Task {task.id} exceeded its timeout of {task.timeout_ms}ms")
                return self._resolve_failure(
                    task, context, f"Task timed out after {task.timeout_ms}ms"
                )

            try:
                result = run.result()
            except NonRetryableTaskError as e:
                return self._resolve_failure(task, context, _error_message(e), retryable=False)
            except (Exception, asyncio.CancelledError) as e:
                # A handler cancelling itself is a failed attempt like any other
                logger.warning(f"Handler for task {task.id} raised {type(e).__name__}: {e}")
                return self._resolve_failure(task, context, _error_message(e))

            if isinstance(result, TaskFailure):
                return self._resolve_failure(
                    task, context, result.message, retryable=result.retryable
                )
            return self._resolve_success(task, context, result)

    def _resolve_success(self, task: Task, context: TaskContext, result: Any) -> TaskOutcome:
        try:
            normalized = _normalize_result(result)
        except (TypeError, ValueError) as e:
            return self._resolve_failure(task, context, f"Handler result is not serializable: {e}")

        with self.session_factory() as db:
            resolved = complete_task(db, task.id, normalized, claimed_at=task.started_at)

        status = OUTCOME_COMPLETED if resolved is not None else OUTCOME_REJECTED
        return TaskOutcome(task.id, task.type, status, context.elapsed_ms())

    def _resolve_failure(
        self,
        task: Task,
        context: TaskContext,
        message: str,
        retryable: bool = True,
    ) -> TaskOutcome:
        with self.session_factory() as db:
            resolved = fail_task(
                db, task.id, message, retryable=retryable, claimed_at=task.started_at
            )

        if resolved is None:
            status = OUTCOME_REJECTED
        elif resolved.status == TaskStatus.PENDING.value:
            status = OUTCOME_RETRYING
        else:
            status = OUTCOME_FAILED
        return TaskOutcome(task.id, task.type, status, context.elapsed_ms(), error=message)

    # =========================================================================
    # Worker trigger (one batch)
    # =========================================================================

    def resolve_batch_size(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            return self.batch_size
        return max(1, min(int(batch_size), self.max_batch_size))

    def _recover(self, report: Optional[BatchReport] = None) -> None:
        with self.session_factory() as db:
            recovered = recover_stuck_tasks(db, self.stuck_threshold_minutes)
        if report is not None:
            report.recovered = recovered["retried"]
            report.recovered_failed = recovered["failed"]

    async def process_pending_tasks(self, batch_size: Optional[int] = None) -> BatchReport:
        """
        Process up to ``batch_size`` tasks sequentially.

        Returns:
            BatchReport with per-task outcomes and the queue depth afterwards
        """
        batch_size = self.resolve_batch_size(batch_size)
        report = BatchReport()
        started = time.monotonic()

        if self.recover_stuck:
            self._recover(report)

        for _ in range(batch_size):
            with self.session_factory() as db:
                task = claim_next_task(db)
            if task is None:
                break
            report.record(await self.execute_task(task))

        with self.session_factory() as db:
            report.queue = get_queue_stats(db, stuck_threshold_minutes=self.stuck_threshold_minutes)

        logger.info(
            f"Batch complete | processed={report.processed} | succeeded={report.succeeded} | "
            f"retried={report.retried} | failed={report.failed} | recovered={report.recovered} | "
            f"pending={report.queue.get('pending', 0)} | "
            f"duration={time.monotonic() - started:.2f}s"
        )
        return report

    # =========================================================================
    # Continuous processor (standalone worker process)
    # =========================================================================

    async def run_forever(
        self,
        poll_interval: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
        recovery_interval: float = 60.0,
    ) -> None:
        """
        Poll the queue until ``stop_event`` is set, keeping at most
        ``max_concurrent`` tasks in flight. Each in-flight task is handled
        independently. A store error stops the loop after in-flight tasks
        finish, and is re-raised.
        """
        poll_interval = settings.TASK_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        max_concurrent = max_concurrent or settings.TASK_MAX_CONCURRENT
        stop_event = stop_event or asyncio.Event()

        in_flight: Set[asyncio.Task] = set()
        errors: List[BaseException] = []
        last_recovery = float("-inf")

        def _done(t: asyncio.Task) -> None:
            in_flight.discard(t)
            if not t.cancelled() and t.exception() is not None:
                errors.append(t.exception())

        logger.info(
            f"Task processor started | poll_interval={poll_interval}s | "
            f"max_concurrent={max_concurrent} | handlers={self.registry.types()}"
        )

        try:
            while not stop_event.is_set() and not errors:
                if self.recover_stuck and time.monotonic() - last_recovery >= recovery_interval:
                    self._recover()
                    last_recovery = time.monotonic()

                if len(in_flight) < max_concurrent:
                    with self.session_factory() as db:
                        task = claim_next_task(db)
                    if task is not None:
                        t = asyncio.create_task(self.execute_task(task))
                        in_flight.add(t)
                        t.add_done_callback(_done)
                        continue

                if len(in_flight) >= max_concurrent:
                    # Full: wake as soon as a slot frees up
                    await asyncio.wait(
                        set(in_flight), timeout=poll_interval, return_when=asyncio.FIRST_COMPLETED
                    )
                    continue

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            logger.info("Task processor stopped")

        if errors:
            raise errors[0]
