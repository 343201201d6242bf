"""Progress events for live execution observers."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from script_orchestrator.entities.catalog import utc_now
from script_orchestrator.entities.records import ExecutionState

logger = logging.getLogger(__name__)


class ExecutionEventKind(StrEnum):
    STATUS = "status"  # State transition
    OUTPUT = "output"  # One line from stdout or stderr
    COMPLETED = "completed"  # Terminal state reached


class ExecutionEvent(BaseModel):
    """A single progress notification."""

    execution_id: str
    kind: ExecutionEventKind
    state: ExecutionState | None = None
    stream: str | None = Field(default=None, description="stdout or stderr for output events")
    data: str = ""
    duration_ms: int | None = None
    timestamp: datetime = Field(default_factory=utc_now)


@runtime_checkable
class ProgressSink(Protocol):
    """Receives execution events; delivery is best effort."""

    async def publish(self, event: ExecutionEvent) -> None: ...


class NullProgressSink:
    """Sink that only logs events at debug level."""

    async def publish(self, event: ExecutionEvent) -> None:
        logger.debug("Execution %s: %s %s", event.execution_id, event.kind, event.state or event.stream or "")
