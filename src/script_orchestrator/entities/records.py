"""Accounting records for synchronization runs and script executions."""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from script_orchestrator.entities.catalog import utc_now


def new_id() -> str:
    return uuid.uuid4().hex


class SyncKind(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncTrigger(StrEnum):
    """What started a synchronization run."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    POLL = "poll"


class SyncOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"  # Some files failed, the rest were committed


class SyncRecord(BaseModel):
    """Append-only history entry for one synchronization run."""

    id: str = Field(default_factory=new_id)
    binding_id: str
    kind: SyncKind
    trigger: SyncTrigger = SyncTrigger.MANUAL
    outcome: SyncOutcome
    processed: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    file_errors: dict[str, str] = Field(default_factory=dict)  # path -> error
    started_at: datetime
    completed_at: datetime

    @property
    def changed(self) -> int:
        """Count of catalog changes made by the run."""
        return self.added + self.updated + self.removed


class SyncStatus(BaseModel):
    """Current sync state of a binding."""

    binding_id: str
    is_running: bool = False
    last_outcome: SyncOutcome | None = None
    last_started_at: datetime | None = None
    last_successful_sync: datetime | None = None


class ExecutionState(StrEnum):
    """Execution lifecycle: pending -> running -> completed | failed | cancelled."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)


class ExecutionRecord(BaseModel):
    """Durable accounting for one script execution."""

    id: str = Field(default_factory=new_id)
    script_id: str | None = Field(default=None, description="Catalog entry ID; None for ad hoc content")
    state: ExecutionState = ExecutionState.PENDING
    parameters: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: int
    constrained: bool = True
    memory_budget_mb: int | None = None
    output: str = ""
    error_output: str = ""
    exit_code: int | None = None
    error: str | None = None
    host: str | None = None
    runtime_version: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)  # reported resource usage

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal


class ValidationReport(BaseModel):
    """Pre-flight check result for a catalog entry; nothing is executed."""

    script_id: str
    is_valid: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    risk_level: str | None = None
    requires_elevation: bool = False
    dependencies: list[str] = Field(default_factory=list)
    required_version: str | None = None


class ExecutionMetrics(BaseModel):
    """Resource and timing summary derived from a finished execution."""

    execution_id: str
    script_id: str | None = None
    state: ExecutionState
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int = 0
    runtime_version: str | None = None
    host: str | None = None
    output_size: int = 0
    error_output_size: int = 0
    peak_memory_kb: int | None = None
    memory_budget_mb: int | None = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> ExecutionMetrics:
        return cls(
            execution_id=record.id,
            script_id=record.script_id,
            state=record.state,
            start_time=record.started_at or record.created_at,
            end_time=record.completed_at,
            duration_ms=record.duration_ms or 0,
            runtime_version=record.runtime_version,
            host=record.host,
            output_size=len(record.output),
            error_output_size=len(record.error_output),
            peak_memory_kb=record.metadata.get("peak_memory_kb"),
            memory_budget_mb=record.memory_budget_mb,
        )
