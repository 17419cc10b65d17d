# workqueue/service/app.py
"""
Workqueue HTTP Service
Producer entry points (enqueue, cancel, list, stats), the worker trigger
invoked by an external scheduler, maintenance endpoints and health.
"""

import logging
import platform
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from workqueue import __version__
from workqueue.auth import verify_api_key, verify_cron_secret
from workqueue.config import Settings, settings as default_settings
from workqueue.executor import TaskExecutor, TaskHandlerRegistry, load_registry
from workqueue.middleware import CorrelationIdMiddleware
from workqueue.models import SessionLocal, Task, TaskStatus, utcnow
from workqueue.queue import (
    TaskNotFoundError,
    TaskValidationError,
    cancel_task,
    cleanup_old_tasks,
    enqueue_task,
    get_queue_stats,
    get_task,
    list_tasks,
    recover_stuck_tasks,
)
from .schemas import QueueStats, TaskCreate, TaskResponse

logger = logging.getLogger("workqueue.service")


def create_app(
    session_factory: Optional[sessionmaker] = None,
    registry: Optional[TaskHandlerRegistry] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the service around an explicit store and handler registry.

    The same session factory backs every endpoint and the executor, so tests
    can point the whole service at a throwaway database.
    """
    session_factory = session_factory or SessionLocal
    registry = registry if registry is not None else TaskHandlerRegistry()
    config = config or default_settings

    executor = TaskExecutor(registry, session_factory=session_factory)

    app = FastAPI(
        title="Workqueue",
        description="Persistent priority task queue with skip-locked claiming",
        version=__version__,
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.executor = executor

    def get_session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    @app.exception_handler(TaskValidationError)
    async def validation_error_handler(request: Request, exc: TaskValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})

    @app.exception_handler(TaskNotFoundError)
    async def not_found_handler(request: Request, exc: TaskNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.on_event("startup")
    async def verify_schema():
        """Verify the task table exists on startup"""
        bind = session_factory.kw.get("bind")
        if bind is None:
            return
        if Task.__tablename__ not in inspect(bind).get_table_names():
            logger.error(f"Schema verification failed. Missing table: {Task.__tablename__}")
            raise RuntimeError(
                f"Missing table: {Task.__tablename__}. Run: alembic upgrade head"
            )
        logger.info(f"Schema verification passed | handlers={registry.types()}")

    # =========================================================================
    # Producer endpoints
    # =========================================================================

    @app.post("/tasks", status_code=201, response_model=TaskResponse)
    async def create_task(
        body: TaskCreate,
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        """Enqueue a task. The handler never runs inside this request."""
        task = enqueue_task(
            db,
            type=body.type,
            payload=body.payload,
            workspace_id=body.workspace_id,
            priority=body.priority,
            scheduled_for=body.scheduled_for,
            max_retries=body.max_retries,
            timeout_ms=body.timeout_ms,
        )
        return task.to_dict()

    @app.get("/tasks/{task_id}", response_model=TaskResponse)
    async def read_task(
        task_id: str,
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        return get_task(db, task_id).to_dict()

    @app.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
    async def cancel(
        task_id: str,
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        """
        Cancel a task. Pending and running tasks become cancelled; terminal
        tasks are returned unchanged.
        """
        task = cancel_task(db, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return task.to_dict()

    @app.get("/workspaces/{workspace_id}/tasks", response_model=List[TaskResponse])
    async def workspace_tasks(
        workspace_id: str,
        status: Optional[List[TaskStatus]] = Query(default=None),
        type: Optional[str] = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        tasks = list_tasks(db, workspace_id, status=status, type=type, limit=limit)
        return [t.to_dict() for t in tasks]

    @app.get("/stats", response_model=QueueStats)
    async def stats(
        workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        return get_queue_stats(db, workspace_id=workspace_id)

    # =========================================================================
    # Worker trigger (external scheduler)
    # =========================================================================

    @app.post("/cron/process-tasks", dependencies=[Depends(verify_cron_secret)])
    async def process_tasks(
        batch_size: Optional[int] = Query(default=None, alias="batchSize", ge=1),
    ):
        """
        Process one batch of pending tasks and report what happened.

        Returns processed counts plus the queue depth after the batch.
        """
        report = await executor.process_pending_tasks(batch_size)
        return {
            "success": True,
            **report.to_dict(),
            "timestamp": utcnow().isoformat(),
        }

    @app.get("/cron/process-tasks", dependencies=[Depends(verify_cron_secret)])
    async def queue_status(db: Session = Depends(get_session)):
        """Queue depth only, without processing anything"""
        return {
            "queue": get_queue_stats(db),
            "handlers": registry.types(),
            "timestamp": utcnow().isoformat(),
        }

    # =========================================================================
    # Maintenance endpoints
    # =========================================================================

    @app.post("/admin/cleanup")
    async def cleanup(
        older_than_days: int = Query(default=config.CLEANUP_RETENTION_DAYS, alias="olderThanDays", ge=0),
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        """Delete terminal tasks older than the retention window"""
        logger.info(f"Manual cleanup triggered | older_than_days={older_than_days}")
        deleted = cleanup_old_tasks(db, older_than_days)
        return {"deleted": deleted, "olderThanDays": older_than_days, "timestamp": utcnow().isoformat()}

    @app.post("/admin/recover-stuck")
    async def recover_stuck(
        db: Session = Depends(get_session),
        api_key: str = Depends(verify_api_key),
    ):
        """Manually requeue (or fail) stuck running tasks"""
        logger.info("Manual stuck task recovery triggered")
        result = recover_stuck_tasks(db, config.STUCK_TASK_THRESHOLD_MINUTES)
        return {"status": "completed", "result": result, "timestamp": utcnow().isoformat()}

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/health")
    async def health_check(db: Session = Depends(get_session)):
        """Store connectivity plus queue counts; degraded while tasks are stuck"""
        try:
            db.execute(text("SELECT 1"))
            queue = get_queue_stats(db, stuck_threshold_minutes=config.STUCK_TASK_THRESHOLD_MINUTES)
            db_healthy = True
        except SQLAlchemyError as e:
            logger.error(f"Health check failed - store unavailable: {e}")
            queue = {}
            db_healthy = False

        if not db_healthy:
            overall_status = "unhealthy"
        elif queue.get("stuck", 0) > 0:
            overall_status = "degraded"
        else:
            overall_status = "healthy"

        return {
            "status": overall_status,
            "platform": platform.system(),
            "timestamp": utcnow().isoformat(),
            "database_healthy": db_healthy,
            "queue": queue,
            "handlers": registry.types(),
        }

    return app


# Default application (uvicorn workqueue.service.app:app)
app = create_app(registry=load_registry(default_settings.HANDLER_MODULES))


if __name__ == "__main__":
    import uvicorn
    from workqueue.config import configure_logging

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
