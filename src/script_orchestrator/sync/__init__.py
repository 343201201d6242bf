"""Repository synchronization: engine, webhook ingestion and polling."""

from script_orchestrator.sync.engine import RepositoryNotRegisteredError, SyncConflictError, SyncEngine
from script_orchestrator.sync.manager import SyncManager
from script_orchestrator.sync.poller import RepositoryPoller
from script_orchestrator.sync.webhook import WebhookIngestor, WebhookResult, WebhookServer, sign_payload

__all__ = [
    "RepositoryNotRegisteredError",
    "RepositoryPoller",
    "SyncConflictError",
    "SyncEngine",
    "SyncManager",
    "WebhookIngestor",
    "WebhookResult",
    "WebhookServer",
    "sign_payload",
]
