# workqueue/service/schemas.py
"""Request/response models for the HTTP surface"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workqueue.models import MAX_RETRIES_LIMIT, MAX_TIMEOUT_MS, TaskPriority


class TaskCreate(BaseModel):
    """Validated enqueue request (camelCase on the wire)"""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: str = Field(..., min_length=1, max_length=100, description="Handler name")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input")
    workspace_id: str = Field(..., alias="workspaceId", min_length=1, max_length=100)
    priority: TaskPriority = Field(default=TaskPriority.NORMAL)
    scheduled_for: Optional[datetime] = Field(default=None, alias="scheduledFor")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries", ge=0, le=MAX_RETRIES_LIMIT)
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs", gt=0, le=MAX_TIMEOUT_MS)

    @field_validator("type", "workspace_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class TaskResponse(BaseModel):
    """Full task representation"""
    id: str
    type: str
    payload: Dict[str, Any]
    workspaceId: str
    status: str
    priority: str
    scheduledFor: Optional[str]
    startedAt: Optional[str]
    completedAt: Optional[str]
    error: Optional[str]
    retries: int
    maxRetries: int
    timeoutMs: int
    result: Optional[Dict[str, Any]]
    createdAt: str
    updatedAt: str


class QueueStats(BaseModel):
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    total: int
    stuck: int
