# workqueue/models/task.py
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every datetime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    """Task lifecycle status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Task priority bands, highest first"""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_WEIGHTS: Dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 1,
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Upper bounds for the integer columns (int4 on PostgreSQL)
MAX_TIMEOUT_MS = 2 ** 31 - 1
MAX_RETRIES_LIMIT = 100


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Task(Base):
    """Background task row

    Lifecycle:
    - pending: waiting for scheduled_for to pass and a worker to claim it
    - running: claimed by exactly one worker (started_at set)
    - completed / failed / cancelled: terminal, removed by cleanup after retention
    """
    __tablename__ = "background_tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(100), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    workspace_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    priority = Column(String(20), nullable=False, default=TaskPriority.NORMAL.value)
    scheduled_for = Column(DateTime, nullable=False, default=utcnow)

    started_at = Column(DateTime, nullable=True)  # Set when claimed
    completed_at = Column(DateTime, nullable=True)  # Set only on success
    error = Column(Text, nullable=True)  # Last failure message

    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    timeout_ms = Column(Integer, nullable=False, default=300000)

    result = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_background_tasks_claim", "status", "scheduled_for"),
        Index("ix_background_tasks_workspace", "workspace_id", "created_at"),
        Index("ix_background_tasks_cleanup", "status", "updated_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload or {},
            "workspaceId": self.workspace_id,
            "status": self.status,
            "priority": self.priority,
            "scheduledFor": _isoformat(self.scheduled_for),
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "error": self.error,
            "retries": self.retries,
            "maxRetries": self.max_retries,
            "timeoutMs": self.timeout_ms,
            "result": self.result,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Task {self.id} type={self.type} status={self.status} priority={self.priority}>"
