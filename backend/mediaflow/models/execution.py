"""
Run state and result models for workflow execution.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class RunState(BaseModel):
    """Scheduler bookkeeping exposed to observers."""

    is_running: bool = False
    current_node_ids: list[str] = Field(default_factory=list)
    paused_at_node_id: str | None = None
    status: RunStatus = RunStatus.IDLE
    max_concurrent_calls: int = 3


class NodeExecutionResult(BaseModel):
    node_id: str
    node_type: str | None = None
    status: Literal["completed", "error", "skipped", "paused", "cancelled"]
    error: str | None = None
    execution_time_ms: int = 0


class WorkflowRunResult(BaseModel):
    status: RunStatus
    node_results: list[NodeExecutionResult] = Field(default_factory=list)
    total_execution_time_ms: int = 0
    error: str | None = None
    paused_at_node_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class WorkflowEvent(BaseModel):
    """One progress event, serialized as an SSE `data:` line."""

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        return f"data: {json.dumps({'event': self.event, **self.payload})}\n\n"
