"""Pydantic schemas for the JSON documents persisted under ``.rover/tasks``.

The managers keep documents as plain dicts (so key order and unknown keys
survive a load/save cycle) and validate them against these models before
every write.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CURRENT_TASK_SCHEMA_VERSION = "1.5"
CURRENT_ITERATION_SCHEMA_VERSION = "1.0"


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ITERATING = "ITERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED_CREDITS = "PAUSED_CREDITS"
    MERGED = "MERGED"
    PUSHED = "PUSHED"


# Execution states written by the agent into iterations/<n>/status.json
IterationState = Literal[
    "initializing", "installing", "running", "completed", "failed", "credit_exhausted"
]

ITERATION_STATES = (
    "initializing", "installing", "running", "completed", "failed", "credit_exhausted"
)


class CamelModel(BaseModel):
    """Base model reading camelCase JSON keys into snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class TaskSource(CamelModel):
    """Where the task came from (a GitHub issue or typed in by hand)."""

    type: Literal["github", "manual"]
    id: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    ref: Optional[dict[str, Any]] = None


class NetworkRule(CamelModel):
    host: str
    description: Optional[str] = None


class NetworkConfig(CamelModel):
    """Sandbox network policy, passed through to the sandbox untouched."""

    mode: Literal["allowlist", "blocklist", "none"]
    rules: list[NetworkRule] = Field(default_factory=list)
    allow_dns: bool = True
    allow_localhost: bool = True


class TaskDescription(CamelModel):
    """Schema of ``description.json`` at version 1.5."""

    id: int = Field(gt=0)
    uuid: UUID
    title: str = Field(min_length=1)
    description: str
    inputs: dict[str, str]
    status: TaskStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_iteration_at: Optional[datetime] = None
    last_status_check: Optional[datetime] = None
    iterations: int = Field(ge=1)
    workflow_name: str = Field(min_length=1)
    worktree_path: str
    branch_name: str
    agent: Optional[str] = None
    agent_model: Optional[str] = None
    source_branch: Optional[str] = None
    base_commit: Optional[str] = None
    container_id: Optional[str] = None
    sandbox_metadata: Optional[dict[str, Any]] = None
    execution_status: Optional[str] = None
    running_at: Optional[datetime] = None
    error_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    restart_count: Optional[int] = Field(default=None, ge=0)
    last_restart_at: Optional[datetime] = None
    agent_image: Optional[str] = None
    network_config: Optional[NetworkConfig] = None
    source: Optional[TaskSource] = None
    on_complete_hook_fired_at: Optional[datetime] = None
    version: str


class PreviousContext(CamelModel):
    plan: Optional[str] = None
    changes: Optional[str] = None
    iteration_number: Optional[int] = None


class IterationDescription(CamelModel):
    """Schema of ``iterations/<n>/iteration.json``."""

    version: str
    id: int = Field(gt=0)
    iteration: int = Field(ge=1)
    title: str
    description: str
    created_at: datetime
    previous_context: PreviousContext = Field(default_factory=PreviousContext)


class IterationStatus(CamelModel):
    """Schema of ``iterations/<n>/status.json``."""

    task_id: str
    status: IterationState
    current_step: str
    progress: int = Field(ge=0, le=100)
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
