"""Catalog store protocol and in-memory implementation with optional JSON persistence."""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from script_orchestrator.entities.catalog import CatalogEntry, RepositoryBinding, RepositoryFile, RepositoryStatus
from script_orchestrator.entities.records import ExecutionRecord, ExecutionState, SyncRecord

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the store cannot read or commit a record."""


@runtime_checkable
class CatalogStore(Protocol):
    """Protocol for catalog persistence backends.

    Every mutating call is an atomic single-record commit.
    """

    # Repository bindings
    def get_binding(self, binding_id: str) -> RepositoryBinding | None: ...

    def list_bindings(self, status: RepositoryStatus | None = None) -> list[RepositoryBinding]: ...

    def upsert_binding(self, binding: RepositoryBinding) -> None: ...

    # Repository files
    def get_file(self, binding_id: str, path: str, branch: str) -> RepositoryFile | None: ...

    def list_files(self, binding_id: str, branch: str | None = None) -> list[RepositoryFile]: ...

    def upsert_file(self, file: RepositoryFile) -> None: ...

    def delete_file(self, binding_id: str, path: str, branch: str) -> bool: ...

    # Catalog entries
    def get_entry(self, entry_id: str) -> CatalogEntry | None: ...

    def list_entries(self, active_only: bool = False) -> list[CatalogEntry]: ...

    def upsert_entry(self, entry: CatalogEntry) -> None: ...

    # Sync history (append-only)
    def add_sync_record(self, record: SyncRecord) -> None: ...

    def list_sync_records(self, binding_id: str, limit: int = 50) -> list[SyncRecord]: ...

    # Executions
    def add_execution(self, record: ExecutionRecord) -> None: ...

    def update_execution(self, record: ExecutionRecord) -> None: ...

    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def list_executions(self, state: ExecutionState | None = None) -> list[ExecutionRecord]: ...


class InMemoryCatalogStore:
    """Dict-backed catalog store.

    When ``store_path`` is given, the full store is written to that JSON
    file after every commit and loaded back on construction.
    """

    def __init__(self, store_path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            store_path: Optional JSON file for persistence.
        """
        self.store_path = store_path
        self._lock = threading.Lock()
        self._bindings: dict[str, RepositoryBinding] = {}
        self._files: dict[tuple[str, str, str], RepositoryFile] = {}
        self._entries: dict[str, CatalogEntry] = {}
        self._sync_records: list[SyncRecord] = []
        self._executions: dict[str, ExecutionRecord] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Load store contents from disk if the file exists."""
        if self.store_path is None or not self.store_path.exists():
            return

        try:
            data = json.loads(self.store_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise PersistenceError(f"Cannot load catalog store from {self.store_path}: {e}") from e

        for item in data.get("bindings", []):
            binding = RepositoryBinding.model_validate(item)
            self._bindings[binding.id] = binding
        for item in data.get("files", []):
            file = RepositoryFile.model_validate(item)
            self._files[file.key] = file
        for item in data.get("entries", []):
            entry = CatalogEntry.model_validate(item)
            self._entries[entry.id] = entry
        self._sync_records = [SyncRecord.model_validate(item) for item in data.get("sync_records", [])]
        for item in data.get("executions", []):
            record = ExecutionRecord.model_validate(item)
            self._executions[record.id] = record

        logger.info(
            "Loaded catalog store: %d bindings, %d files, %d entries",
            len(self._bindings),
            len(self._files),
            len(self._entries),
        )

    def _commit(self) -> None:
        """Write the store to disk; caller holds the lock."""
        if self.store_path is None:
            return

        data: dict[str, list[dict[str, Any]]] = {
            "bindings": [b.model_dump(mode="json") for b in self._bindings.values()],
            "files": [f.model_dump(mode="json") for f in self._files.values()],
            "entries": [e.model_dump(mode="json") for e in self._entries.values()],
            "sync_records": [r.model_dump(mode="json") for r in self._sync_records],
            "executions": [x.model_dump(mode="json") for x in self._executions.values()],
        }
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp_path.replace(self.store_path)
        except OSError as e:
            raise PersistenceError(f"Cannot write catalog store to {self.store_path}: {e}") from e

    # ------------------------------------------------------------------
    # Repository bindings
    # ------------------------------------------------------------------

    def get_binding(self, binding_id: str) -> RepositoryBinding | None:
        with self._lock:
            binding = self._bindings.get(binding_id.lower())
            return binding.model_copy(deep=True) if binding else None

    def list_bindings(self, status: RepositoryStatus | None = None) -> list[RepositoryBinding]:
        with self._lock:
            return [
                b.model_copy(deep=True)
                for b in self._bindings.values()
                if status is None or b.status == status
            ]

    def upsert_binding(self, binding: RepositoryBinding) -> None:
        with self._lock:
            self._bindings[binding.id] = binding.model_copy(deep=True)
            self._commit()

    # ------------------------------------------------------------------
    # Repository files
    # ------------------------------------------------------------------

    def get_file(self, binding_id: str, path: str, branch: str) -> RepositoryFile | None:
        with self._lock:
            file = self._files.get((binding_id, path, branch))
            return file.model_copy(deep=True) if file else None

    def list_files(self, binding_id: str, branch: str | None = None) -> list[RepositoryFile]:
        with self._lock:
            return [
                f.model_copy(deep=True)
                for f in self._files.values()
                if f.binding_id == binding_id and (branch is None or f.branch == branch)
            ]

    def upsert_file(self, file: RepositoryFile) -> None:
        with self._lock:
            self._files[file.key] = file.model_copy(deep=True)
            self._commit()

    def delete_file(self, binding_id: str, path: str, branch: str) -> bool:
        with self._lock:
            removed = self._files.pop((binding_id, path, branch), None)
            if removed is not None:
                self._commit()
            return removed is not None

    # ------------------------------------------------------------------
    # Catalog entries
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: str) -> CatalogEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    def list_entries(self, active_only: bool = False) -> list[CatalogEntry]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._entries.values()
                if e.is_active or not active_only
            ]

    def upsert_entry(self, entry: CatalogEntry) -> None:
        with self._lock:
            self._entries[entry.id] = entry.model_copy(deep=True)
            self._commit()

    # ------------------------------------------------------------------
    # Sync history
    # ------------------------------------------------------------------

    def add_sync_record(self, record: SyncRecord) -> None:
        with self._lock:
            if any(r.id == record.id for r in self._sync_records):
                raise PersistenceError(f"Sync record {record.id} already exists")
            self._sync_records.append(record.model_copy(deep=True))
            self._commit()

    def list_sync_records(self, binding_id: str, limit: int = 50) -> list[SyncRecord]:
        """Return the binding's sync history, most recent first."""
        with self._lock:
            records = [r for r in self._sync_records if r.binding_id == binding_id]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def add_execution(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._executions[record.id] = record.model_copy(deep=True)
            self._commit()

    def update_execution(self, record: ExecutionRecord) -> None:
        with self._lock:
            existing = self._executions.get(record.id)
            if existing is None:
                raise PersistenceError(f"Execution {record.id} not found")
            if existing.is_finished:
                raise PersistenceError(f"Execution {record.id} is already {existing.state}")
            self._executions[record.id] = record.model_copy(deep=True)
            self._commit()

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(execution_id)
            return record.model_copy(deep=True) if record else None

    def list_executions(self, state: ExecutionState | None = None) -> list[ExecutionRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._executions.values()
                if state is None or r.state == state
            ]

    def __len__(self) -> int:
        """Return the number of catalog entries."""
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        """Check if a catalog entry ID exists in the store."""
        with self._lock:
            return entry_id in self._entries
