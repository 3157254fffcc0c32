"""Engine REST payloads."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExecutionRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FlowExecution(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    flow_id: str
    status: ExecutionRunStatus = ExecutionRunStatus.PENDING
    current_step_id: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    failed_steps: List[str] = Field(default_factory=list)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionRunStatus.RUNNING

    @property
    def last_activity(self) -> datetime:
        return self.updated_at or self.created_at

    def is_stale(self, threshold: timedelta, now: Optional[datetime] = None) -> bool:
        """True when nothing happened for longer than ``threshold``."""

        now = now or datetime.now(timezone.utc)
        return now - self.last_activity > threshold


class FlowExecutionList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    executions: List[FlowExecution] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 0


class ApprovalResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = ""
    approved: bool
