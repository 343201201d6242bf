"""Tests for InMemoryCatalogStore: CRUD, snapshots and JSON persistence."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from script_orchestrator.entities import (
    CatalogEntry,
    ExecutionRecord,
    ExecutionState,
    RepositoryBinding,
    RepositoryFile,
    RepositoryStatus,
    SyncKind,
    SyncOutcome,
    SyncRecord,
)
from script_orchestrator.memory import CatalogStore, InMemoryCatalogStore, PersistenceError

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)


def _make_record(binding_id: str = "acme/scripts", minutes: int = 0) -> SyncRecord:
    started = T0 + timedelta(minutes=minutes)
    return SyncRecord(
        binding_id=binding_id,
        kind=SyncKind.FULL,
        outcome=SyncOutcome.SUCCESS,
        started_at=started,
        completed_at=started + timedelta(seconds=2),
    )


def _make_file(path: str = "tools/Deploy.ps1", branch: str = "main") -> RepositoryFile:
    return RepositoryFile(
        binding_id="acme/scripts",
        path=path,
        branch=branch,
        sha="abc",
        catalog_entry_id=CatalogEntry.generate_id("acme/scripts", branch, path),
    )


class TestProtocol:
    def test_in_memory_store_satisfies_protocol(self, store: InMemoryCatalogStore) -> None:
        assert isinstance(store, CatalogStore)


class TestBindings:
    def test_lookup_is_case_insensitive(self, store: InMemoryCatalogStore, binding: RepositoryBinding) -> None:
        assert store.get_binding("ACME/Scripts") == binding
        assert store.get_binding("acme/other") is None

    def test_list_by_status(self, store: InMemoryCatalogStore, binding: RepositoryBinding) -> None:
        store.upsert_binding(RepositoryBinding.create("acme", "legacy", status=RepositoryStatus.INACTIVE))
        assert [b.id for b in store.list_bindings(RepositoryStatus.ACTIVE)] == ["acme/scripts"]
        assert len(store.list_bindings()) == 2

    def test_returned_values_are_snapshots(self, store: InMemoryCatalogStore, binding: RepositoryBinding) -> None:
        fetched = store.get_binding(binding.id)
        assert fetched is not None
        fetched.status = RepositoryStatus.ARCHIVED
        assert store.get_binding(binding.id).status == RepositoryStatus.ACTIVE  # type: ignore[union-attr]


class TestFilesAndEntries:
    def test_file_unique_per_branch(self, store: InMemoryCatalogStore) -> None:
        store.upsert_file(_make_file(branch="main"))
        store.upsert_file(_make_file(branch="dev"))
        store.upsert_file(_make_file(branch="main"))
        assert len(store.list_files("acme/scripts")) == 2
        assert len(store.list_files("acme/scripts", branch="main")) == 1

    def test_delete_file(self, store: InMemoryCatalogStore) -> None:
        store.upsert_file(_make_file())
        assert store.delete_file("acme/scripts", "tools/Deploy.ps1", "main") is True
        assert store.delete_file("acme/scripts", "tools/Deploy.ps1", "main") is False
        assert store.get_file("acme/scripts", "tools/Deploy.ps1", "main") is None

    def test_entries_active_filter(self, store: InMemoryCatalogStore) -> None:
        store.upsert_entry(CatalogEntry(id="a", name="a", content="1"))
        store.upsert_entry(CatalogEntry(id="b", name="b", content="2", is_active=False))
        assert {e.id for e in store.list_entries()} == {"a", "b"}
        assert [e.id for e in store.list_entries(active_only=True)] == ["a"]
        assert len(store) == 2
        assert "a" in store
        assert "c" not in store


class TestConcurrentAccess:
    def test_reads_consistent_while_another_thread_writes(self, store: InMemoryCatalogStore) -> None:
        total = 400
        errors: list[BaseException] = []

        def write() -> None:
            for index in range(total):
                store.upsert_entry(CatalogEntry(id=f"e{index}", name=f"e{index}", content="Write-Output 1"))
                store.upsert_file(_make_file(path=f"tools/{index}.ps1"))

        def read() -> None:
            try:
                while len(store) < total:
                    store.list_entries(active_only=True)
                    store.list_files("acme/scripts")
            except BaseException as e:  # noqa: BLE001
                errors.append(e)

        readers = [threading.Thread(target=read) for _ in range(2)]
        for thread in readers:
            thread.start()
        write()
        for thread in readers:
            thread.join(timeout=30)

        assert errors == []
        assert len(store.list_entries()) == total
        assert len(store.list_files("acme/scripts")) == total


class TestSyncHistory:
    def test_most_recent_first_with_limit(self, store: InMemoryCatalogStore) -> None:
        for minutes in (0, 10, 5):
            store.add_sync_record(_make_record(minutes=minutes))
        store.add_sync_record(_make_record(binding_id="acme/other"))

        history = store.list_sync_records("acme/scripts")
        assert [r.started_at.minute for r in history] == [10, 5, 0]
        assert len(store.list_sync_records("acme/scripts", limit=1)) == 1

    def test_records_are_append_only(self, store: InMemoryCatalogStore) -> None:
        record = _make_record()
        store.add_sync_record(record)
        with pytest.raises(PersistenceError):
            store.add_sync_record(record)


class TestExecutions:
    def test_update_and_filter(self, store: InMemoryCatalogStore) -> None:
        record = ExecutionRecord(timeout_seconds=30)
        store.add_execution(record)
        running = record.model_copy(update={"state": ExecutionState.RUNNING})
        store.update_execution(running)
        assert [r.id for r in store.list_executions(ExecutionState.RUNNING)] == [record.id]
        assert store.list_executions(ExecutionState.PENDING) == []

    def test_terminal_records_are_final(self, store: InMemoryCatalogStore) -> None:
        record = ExecutionRecord(timeout_seconds=30)
        store.add_execution(record)
        store.update_execution(record.model_copy(update={"state": ExecutionState.COMPLETED}))
        with pytest.raises(PersistenceError, match="already completed"):
            store.update_execution(record.model_copy(update={"state": ExecutionState.FAILED}))

    def test_update_unknown_execution(self, store: InMemoryCatalogStore) -> None:
        with pytest.raises(PersistenceError, match="not found"):
            store.update_execution(ExecutionRecord(timeout_seconds=30))


class TestPersistence:
    def test_round_trip_through_json_file(self, tmp_path: Path, documented_script: str) -> None:
        path = tmp_path / "state" / "catalog.json"
        first = InMemoryCatalogStore(store_path=path)
        first.upsert_binding(RepositoryBinding.create("acme", "scripts"))
        first.upsert_file(_make_file())
        first.upsert_entry(CatalogEntry(id="acme/scripts/main/tools/Deploy.ps1", name="Deploy", content=documented_script))
        first.add_sync_record(_make_record())
        first.add_execution(ExecutionRecord(timeout_seconds=30, parameters={"Force": True}))

        second = InMemoryCatalogStore(store_path=path)
        assert second.get_binding("acme/scripts") == first.get_binding("acme/scripts")
        assert second.get_file("acme/scripts", "tools/Deploy.ps1", "main") is not None
        assert second.get_entry("acme/scripts/main/tools/Deploy.ps1").content == documented_script  # type: ignore[union-attr]
        assert len(second.list_sync_records("acme/scripts")) == 1
        assert second.list_executions()[0].parameters == {"Force": True}
        assert not path.with_suffix(".json.tmp").exists()

    def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "catalog.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceError, match="Cannot load"):
            InMemoryCatalogStore(store_path=path)

    def test_unwritable_location_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = InMemoryCatalogStore(store_path=blocker / "catalog.json")
        with pytest.raises(PersistenceError, match="Cannot write"):
            store.upsert_binding(RepositoryBinding.create("acme", "scripts"))
