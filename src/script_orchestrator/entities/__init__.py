"""Entity models for the script orchestration domain layer."""

from script_orchestrator.entities.analysis import (
    ModuleDependency,
    ParsedScript,
    RiskLevel,
    RuntimeVersion,
    ScriptMetadata,
    SecurityAnalysis,
    SecurityFinding,
)
from script_orchestrator.entities.catalog import (
    CatalogEntry,
    RepositoryBinding,
    RepositoryFile,
    RepositoryStatus,
)
from script_orchestrator.entities.records import (
    ExecutionMetrics,
    ExecutionRecord,
    ExecutionState,
    SyncKind,
    SyncOutcome,
    SyncRecord,
    SyncStatus,
    SyncTrigger,
    ValidationReport,
)

__all__ = [
    "CatalogEntry",
    "ExecutionMetrics",
    "ExecutionRecord",
    "ExecutionState",
    "ModuleDependency",
    "ParsedScript",
    "RepositoryBinding",
    "RepositoryFile",
    "RepositoryStatus",
    "RiskLevel",
    "RuntimeVersion",
    "ScriptMetadata",
    "SecurityAnalysis",
    "SecurityFinding",
    "SyncKind",
    "SyncOutcome",
    "SyncRecord",
    "SyncStatus",
    "SyncTrigger",
    "ValidationReport",
]
