"""Tests for the polling fallback."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from script_orchestrator.config import SyncConfig
from script_orchestrator.entities import RepositoryBinding, SyncOutcome, SyncTrigger
from script_orchestrator.github.client import BranchInfo, TransientError
from script_orchestrator.memory import InMemoryCatalogStore
from script_orchestrator.sync import RepositoryPoller, SyncEngine

if TYPE_CHECKING:
    from conftest import FakeRepositoryClient


@pytest.fixture
def engine(remote: FakeRepositoryClient, store: InMemoryCatalogStore) -> SyncEngine:
    return SyncEngine(remote, store)  # type: ignore[arg-type]


@pytest.fixture
def poller(engine: SyncEngine) -> RepositoryPoller:
    return RepositoryPoller(SyncConfig(poll_enabled=True, poll_interval_seconds=60), engine)


class TestPollOnce:
    def test_change_triggers_sync_and_records_head(
        self,
        poller: RepositoryPoller,
        remote: FakeRepositoryClient,
        store: InMemoryCatalogStore,
        binding: RepositoryBinding,
    ) -> None:
        remote.files = {"A.ps1": "Write-Output 'a'"}

        records = asyncio.run(poller.poll_now())

        assert len(records) == 1
        assert records[0].trigger == SyncTrigger.POLL
        assert records[0].added == 1
        assert store.get_binding(binding.id).last_commit_sha == remote.head_sha  # type: ignore[union-attr]

    def test_unchanged_head_skips_sync(
        self, poller: RepositoryPoller, remote: FakeRepositoryClient, binding: RepositoryBinding
    ) -> None:
        asyncio.run(poller.poll_now())
        listings = remote.listings

        assert asyncio.run(poller.poll_now()) == []
        assert remote.listings == listings

        remote.head_sha = "b" * 40
        assert len(asyncio.run(poller.poll_now())) == 1
        assert remote.listings == listings + 1

    def test_failed_sync_retried_next_cycle(
        self,
        poller: RepositoryPoller,
        remote: FakeRepositoryClient,
        store: InMemoryCatalogStore,
        binding: RepositoryBinding,
    ) -> None:
        remote.listing_error = TransientError("down", 503)
        records = asyncio.run(poller.poll_now())
        assert records[0].outcome == SyncOutcome.FAILURE
        assert store.get_binding(binding.id).last_commit_sha is None  # type: ignore[union-attr]

        remote.listing_error = None
        records = asyncio.run(poller.poll_now())
        assert records[0].outcome == SyncOutcome.SUCCESS

    def test_one_failing_binding_does_not_stop_others(
        self,
        poller: RepositoryPoller,
        remote: FakeRepositoryClient,
        store: InMemoryCatalogStore,
        binding: RepositoryBinding,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        head_lookup = remote.get_branch

        async def get_branch(owner: str, name: str, branch: str) -> BranchInfo:
            if name == "broken":
                raise TransientError("GET branch failed (HTTP 500)", 500)
            return await head_lookup(owner, name, branch)

        monkeypatch.setattr(remote, "get_branch", get_branch)
        store.upsert_binding(RepositoryBinding.create("acme", "broken"))
        remote.files = {"A.ps1": "Write-Output 'a'"}

        records = asyncio.run(poller.poll_now())

        assert [r.binding_id for r in records] == ["acme/scripts"]

    def test_running_sync_is_skipped(
        self, poller: RepositoryPoller, engine: SyncEngine, remote: FakeRepositoryClient, binding: RepositoryBinding
    ) -> None:
        async def scenario() -> list:
            gate = asyncio.Event()
            remote.listing_gate = gate
            running = asyncio.create_task(engine.sync_repository(binding.id))
            while not engine.is_running(binding.id):
                await asyncio.sleep(0)
            records = await poller.poll_now()
            gate.set()
            await running
            return records

        assert asyncio.run(scenario()) == []

    def test_no_bindings(self, poller: RepositoryPoller) -> None:
        assert asyncio.run(poller.poll_now()) == []


class TestLifecycle:
    def test_start_polls_then_stop_cancels(
        self, engine: SyncEngine, remote: FakeRepositoryClient, binding: RepositoryBinding
    ) -> None:
        waits: list[float] = []

        async def parked_sleep(seconds: float) -> None:
            waits.append(seconds)
            await asyncio.Event().wait()

        poller = RepositoryPoller(SyncConfig(poll_interval_seconds=90), engine, sleep=parked_sleep)

        async def scenario() -> None:
            await poller.start()
            await poller.start()  # second start is a no-op
            assert poller.is_running
            while not waits:
                await asyncio.sleep(0)
            await poller.stop()

        asyncio.run(scenario())

        assert waits == [90]
        assert not poller.is_running
        assert remote.listings == 1
