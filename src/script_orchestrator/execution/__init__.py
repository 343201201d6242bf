"""Script execution: engine, runtime collaborator and progress events."""

from script_orchestrator.execution.engine import (
    ExecutionEngine,
    ExecutionError,
    ExecutionNotFoundError,
    ScriptInactiveError,
    ScriptNotFoundError,
    ScriptRejectedError,
)
from script_orchestrator.execution.notifications import (
    ExecutionEvent,
    ExecutionEventKind,
    NullProgressSink,
    ProgressSink,
)
from script_orchestrator.execution.runtime import ProcessRuntime, RunRequest, RunResult, ScriptRuntime, format_arguments

__all__ = [
    "ExecutionEngine",
    "ExecutionError",
    "ExecutionEvent",
    "ExecutionEventKind",
    "ExecutionNotFoundError",
    "NullProgressSink",
    "ProcessRuntime",
    "ProgressSink",
    "RunRequest",
    "RunResult",
    "ScriptInactiveError",
    "ScriptNotFoundError",
    "ScriptRejectedError",
    "ScriptRuntime",
    "format_arguments",
]
