"""Polling-based sync for repositories without webhooks."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from script_orchestrator.entities.catalog import RepositoryStatus
from script_orchestrator.entities.records import SyncOutcome, SyncRecord, SyncTrigger
from script_orchestrator.sync.engine import SyncConflictError

if TYPE_CHECKING:
    from script_orchestrator.config import SyncConfig
    from script_orchestrator.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

# Configure logging to stderr
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class RepositoryPoller:
    """Polls the branch head of each active binding and syncs on change.

    The head commit SHA seen by the last successful sync is kept on the
    binding, so an unchanged repository costs one API call per cycle.
    """

    def __init__(
        self,
        config: SyncConfig,
        engine: SyncEngine,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize poller.

        Args:
            config: Sync configuration with polling settings.
            engine: Sync engine (its client and store are used for head lookups).
            sleep: Coroutine used between polling cycles.
        """
        self._config = config
        self._engine = engine
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _poll_once(self) -> list[SyncRecord]:
        """Poll all active bindings once."""
        store = self._engine.store
        bindings = store.list_bindings(RepositoryStatus.ACTIVE)
        if not bindings:
            logger.debug("No repositories to poll")
            return []

        logger.info("Polling %d repositories for changes", len(bindings))
        records: list[SyncRecord] = []

        for binding in bindings:
            try:
                branch = await self._engine.client.get_branch(binding.owner, binding.name, binding.default_branch)
                head = branch.commit_sha
                if binding.last_commit_sha == head:
                    logger.debug("%s: no changes (SHA: %s)", binding.full_name, head[:8])
                    continue

                logger.info(
                    "%s: change detected (old: %s, new: %s)",
                    binding.full_name,
                    binding.last_commit_sha[:8] if binding.last_commit_sha else "none",
                    head[:8],
                )
                record = await self._engine.sync_repository(binding.id, trigger=SyncTrigger.POLL)
                records.append(record)

                # Partial runs keep the old head so failed files are retried
                if record.outcome == SyncOutcome.SUCCESS:
                    current = store.get_binding(binding.id) or binding
                    current.last_commit_sha = head
                    store.upsert_binding(current)

            except SyncConflictError:
                logger.info("%s: sync already running, skipping this cycle", binding.full_name)
            except Exception:
                logger.exception("Failed to poll %s", binding.full_name)

        return records

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            await self._poll_once()
            await self._sleep(self._config.poll_interval_seconds)

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Poller started (interval: %d seconds)", self._config.poll_interval_seconds)

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Poller stopped")

    async def poll_now(self) -> list[SyncRecord]:
        """Run one polling cycle immediately and return the syncs it triggered."""
        return await self._poll_once()
