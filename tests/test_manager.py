"""Tests for SyncManager wiring configuration into the services it runs."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from script_orchestrator.config import OrchestratorConfig, load_config
from script_orchestrator.entities import CatalogEntry, SyncOutcome
from script_orchestrator.memory import InMemoryCatalogStore
from script_orchestrator.sync import SyncManager

if TYPE_CHECKING:
    from conftest import FakeRepositoryClient


def _config(tmp_path: Path, **sync: object) -> OrchestratorConfig:
    return OrchestratorConfig.model_validate(
        {
            "webhook": {"host": "127.0.0.1", "port": 0, "secret": "s3cr3t"},
            "sync": {"store_path": str(tmp_path / "catalog.json"), **sync},
        }
    )


class TestWiring:
    def test_rate_limiter_built_from_config(self) -> None:
        config = load_config(environ={"ORCHESTRATOR_RATE_LIMIT_MARGIN": "25"})
        config.rate_limit.default_ceiling = 15000
        manager = SyncManager(config, store=InMemoryCatalogStore())

        try:
            assert manager.rate_limiter.safety_margin == 25
            assert manager.rate_limiter.status().ceiling == 15000
            assert manager.rate_limiter.status().remaining == 15000
        finally:
            asyncio.run(manager.client.aclose())

    def test_store_persists_to_configured_path(
        self, tmp_path: Path, remote: FakeRepositoryClient, clean_script: str
    ) -> None:
        remote.files = {"Hello.ps1": clean_script}
        config = _config(tmp_path)
        manager = SyncManager(config, client=remote)  # type: ignore[arg-type]

        async def scenario() -> None:
            binding = await manager.register_repository("acme", "scripts", branch="main")
            await manager.sync_now(binding.id)

        asyncio.run(scenario())

        assert (tmp_path / "catalog.json").exists()
        reloaded = SyncManager(config, client=remote)  # type: ignore[arg-type]
        assert reloaded.store.get_binding("acme/scripts") is not None
        assert CatalogEntry.generate_id("acme/scripts", "main", "Hello.ps1") in reloaded.store  # type: ignore[operator]

    def test_sync_uses_configured_extensions(
        self, tmp_path: Path, remote: FakeRepositoryClient, clean_script: str
    ) -> None:
        remote.files = {"Hello.ps1": clean_script, "Helpers.psm1": clean_script}
        config = _config(tmp_path)
        config.github.script_extensions = [".ps1"]
        manager = SyncManager(config, client=remote)  # type: ignore[arg-type]

        async def scenario() -> None:
            binding = await manager.register_repository("acme", "scripts", branch="main")
            record = await manager.sync_now(binding.id)
            assert record.outcome == SyncOutcome.SUCCESS

        asyncio.run(scenario())

        assert [f.path for f in manager.store.list_files("acme/scripts")] == ["Hello.ps1"]
        assert remote.fetched == ["Hello.ps1"]

    def test_execution_engine_shares_store_and_limits(self, tmp_path: Path, remote: FakeRepositoryClient) -> None:
        config = _config(tmp_path)
        config.execution.max_concurrent_executions = 7
        manager = SyncManager(config, client=remote)  # type: ignore[arg-type]

        assert manager.executor.max_concurrency == 7


class TestLifecycle:
    def test_start_without_polling(self, tmp_path: Path, remote: FakeRepositoryClient) -> None:
        manager = SyncManager(_config(tmp_path, poll_enabled=False), client=remote)  # type: ignore[arg-type]

        async def scenario() -> tuple[bool, bool]:
            await manager.start()
            polling = manager.poller.is_running
            await manager.stop()
            return polling, manager.poller.is_running

        assert asyncio.run(scenario()) == (False, False)

    def test_start_with_polling(self, tmp_path: Path, remote: FakeRepositoryClient) -> None:
        manager = SyncManager(_config(tmp_path, poll_enabled=True), client=remote)  # type: ignore[arg-type]

        async def scenario() -> tuple[bool, bool]:
            await manager.start()
            polling = manager.poller.is_running
            await manager.stop()
            return polling, manager.poller.is_running

        assert asyncio.run(scenario()) == (True, False)
