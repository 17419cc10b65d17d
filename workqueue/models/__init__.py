# Workqueue Models Package
from .database import Base, engine, SessionLocal, create_db_engine, create_session_factory, init_db
from .task import (
    MAX_RETRIES_LIMIT,
    MAX_TIMEOUT_MS,
    PRIORITY_WEIGHTS,
    TERMINAL_STATUSES,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "Task",
    "TaskStatus",
    "TaskPriority",
    "PRIORITY_WEIGHTS",
    "TERMINAL_STATUSES",
    "MAX_RETRIES_LIMIT",
    "MAX_TIMEOUT_MS",
    "utcnow",
]
