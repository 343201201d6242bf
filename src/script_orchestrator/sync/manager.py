"""Sync manager that wires configuration into the sync, webhook and polling services."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from script_orchestrator.execution.engine import ExecutionEngine
from script_orchestrator.github.client import RepositoryClient
from script_orchestrator.github.rate_limiter import RateLimiter
from script_orchestrator.memory.catalog_store import InMemoryCatalogStore
from script_orchestrator.sync.engine import SyncEngine
from script_orchestrator.sync.poller import RepositoryPoller
from script_orchestrator.sync.webhook import WebhookIngestor, WebhookServer

if TYPE_CHECKING:
    from script_orchestrator.config import OrchestratorConfig
    from script_orchestrator.entities.catalog import RepositoryBinding
    from script_orchestrator.entities.records import SyncRecord
    from script_orchestrator.memory.catalog_store import CatalogStore

logger = logging.getLogger(__name__)

# Configure logging to stderr
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SyncManager:
    """Builds and runs the orchestrator's services from one configuration.

    Orchestrates:
    - Catalog store, persisted to ``sync.store_path`` when set
    - Repository client sharing one rate limiter built from ``rate_limit``
    - Sync engine restricted to ``github.script_extensions``
    - Webhook server for real-time change notifications
    - Polling for repositories without webhooks, when ``sync.poll_enabled``
    - Execution engine over the same store

    Usage:
        manager = SyncManager(load_config(Path("orchestrator.yaml")))
        await manager.start()
        binding = await manager.register_repository("acme", "scripts")
        ...
        await manager.stop()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        store: CatalogStore | None = None,
        client: RepositoryClient | None = None,
    ) -> None:
        """Initialize sync manager.

        Args:
            config: Full orchestrator configuration.
            store: Catalog store; an InMemoryCatalogStore over ``sync.store_path`` when omitted.
            client: Repository client; built from ``github`` and ``rate_limit`` when omitted.
        """
        self._config = config
        self._store = store if store is not None else InMemoryCatalogStore(config.sync.store_path)

        self._owns_client = client is None
        if client is None:
            client = RepositoryClient(config.github, RateLimiter.from_config(config.rate_limit))
        self._client = client

        self._engine = SyncEngine(client, self._store, extensions=config.github.script_extensions)
        self._webhook = WebhookServer(config.webhook, WebhookIngestor(self._engine, secret=config.webhook.secret))
        self._poller = RepositoryPoller(config.sync, self._engine)
        self._executor = ExecutionEngine(self._store, config.execution)

    @property
    def store(self) -> CatalogStore:
        return self._store

    @property
    def client(self) -> RepositoryClient:
        return self._client

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._client.rate_limiter

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def webhook(self) -> WebhookServer:
        return self._webhook

    @property
    def poller(self) -> RepositoryPoller:
        return self._poller

    @property
    def executor(self) -> ExecutionEngine:
        return self._executor

    async def start(self) -> None:
        """Start sync services (webhook server and poller)."""
        await self._webhook.start()

        if self._config.sync.poll_enabled:
            await self._poller.start()

        logger.info("Sync manager started")

    async def stop(self) -> None:
        """Stop sync services, cancel executions and release the HTTP client."""
        await self._poller.stop()
        await self._webhook.stop()
        await self._executor.shutdown()
        if self._owns_client:
            await self._client.aclose()
        logger.info("Sync manager stopped")

    async def register_repository(self, owner: str, name: str, branch: str | None = None) -> RepositoryBinding:
        """Register a repository for sync tracking."""
        return await self._engine.register_repository(owner, name, branch)

    async def sync_now(self, binding_id: str) -> SyncRecord:
        """Manually trigger a full sync of a registered repository."""
        return await self._engine.sync_repository(binding_id)

    async def poll_now(self) -> list[SyncRecord]:
        """Manually trigger a poll cycle."""
        return await self._poller.poll_now()
