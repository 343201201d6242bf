"""Webhook ingestion: signature validation, event dispatch and the HTTP receiver."""

from __future__ import annotations

import asyncio
import collections
import hashlib
import hmac
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from aiohttp import web
from pydantic import BaseModel, Field

from script_orchestrator.entities.records import SyncRecord, SyncTrigger
from script_orchestrator.sync.engine import SyncConflictError

if TYPE_CHECKING:
    from script_orchestrator.config import WebhookConfig
    from script_orchestrator.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

# Configure logging to stderr
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"

SYNC_EVENTS = frozenset({"push", "create", "delete", "pull_request"})

# Recent delivery results kept by the server
RESULT_HISTORY = 100


def _as_bytes(payload: bytes | str) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign_payload(payload: bytes | str, secret: str) -> str:
    """Compute the ``sha256=<hex>`` signature header value for a payload."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookResult(BaseModel):
    """Outcome of processing one webhook delivery."""

    event_type: str
    repository: str | None = None
    branch: str | None = None
    paths: list[str] = Field(default_factory=list)
    dispatched: bool = Field(default=False, description="Whether a sync call was made")
    sync_record: SyncRecord | None = None
    message: str = ""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _changed_paths(payload: dict[str, Any]) -> list[str]:
    """Added, modified and removed paths across all pushed commits, deduplicated."""
    commits = payload.get("commits") or []
    if not isinstance(commits, list):
        raise ValueError("commits is not a list")

    paths: dict[str, None] = {}
    for commit in commits:
        if not isinstance(commit, dict):
            raise ValueError("commit is not an object")
        for key in ("added", "modified", "removed"):
            changed = commit.get(key) or []
            if not isinstance(changed, list) or not all(isinstance(p, str) for p in changed):
                raise ValueError(f"commit {key} is not a list of paths")
            for path in changed:
                paths.setdefault(path, None)
    return list(paths)


class WebhookIngestor:
    """Maps repository host change notifications to incremental syncs.

    Recognized events (push, create, delete, pull_request) dispatch one
    ``sync_incremental`` call. Nothing here raises to the caller: bad
    input and downstream failures are logged and reported in the result.
    """

    def __init__(self, engine: SyncEngine, secret: str | None = None) -> None:
        """Initialize the ingestor.

        Args:
            engine: Sync engine receiving incremental sync requests.
            secret: Shared webhook secret; signatures never validate without one.
        """
        self._engine = engine
        self._secret = secret

    def validate_signature(self, payload: bytes | str, signature: str | None) -> bool:
        """Check an ``X-Hub-Signature-256`` value against the raw payload."""
        if not self._secret:
            logger.warning("Rejecting webhook signature: no secret configured")
            return False
        if not signature or not signature.startswith("sha256="):
            logger.warning("Invalid signature format")
            return False

        expected = sign_payload(payload, self._secret)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8", errors="replace"))

    async def process(self, event_type: str, payload: bytes | str | dict[str, Any]) -> WebhookResult:
        """Dispatch one delivery.

        Args:
            event_type: Value of the ``X-GitHub-Event`` header.
            payload: Raw JSON body, or an already decoded object.

        Returns:
            WebhookResult describing what was done.
        """
        result = WebhookResult(event_type=event_type)

        if isinstance(payload, dict):
            data: Any = payload
        else:
            try:
                data = json.loads(_as_bytes(payload))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning("Malformed %s webhook payload: %s", event_type, e)
                result.error = f"Malformed JSON payload: {e}"
                return result
        if not isinstance(data, dict):
            result.error = "Payload is not a JSON object"
            return result

        repository = data.get("repository")
        full_name = repository.get("full_name") if isinstance(repository, dict) else None
        result.repository = full_name if isinstance(full_name, str) else None

        if event_type not in SYNC_EVENTS:
            logger.debug("Ignoring %s event", event_type)
            result.message = f"Event type {event_type!r} ignored"
            return result
        if not result.repository:
            result.error = "Payload has no repository.full_name"
            return result

        if event_type == "push":
            ref = data.get("ref") or ""
            if not isinstance(ref, str):
                result.error = "Payload ref is not a string"
                return result
            if not ref.startswith("refs/heads/"):
                result.message = f"Push to {ref or 'unknown ref'} ignored"
                return result
            result.branch = ref.removeprefix("refs/heads/")
            try:
                result.paths = _changed_paths(data)
            except ValueError as e:
                logger.warning("Malformed push payload for %s: %s", result.repository, e)
                result.error = f"Malformed push payload: {e}"
                return result

        logger.info(
            "Received %s event for %s (branch %s, %d paths)",
            event_type,
            result.repository,
            result.branch or "-",
            len(result.paths),
        )

        try:
            record = await self._engine.sync_incremental(
                result.repository,
                result.paths,
                branch=result.branch,
                trigger=SyncTrigger.WEBHOOK,
            )
        except SyncConflictError as e:
            logger.warning("Webhook sync skipped: %s", e)
            result.error = str(e)
            return result
        except Exception as e:
            logger.exception("Webhook sync failed for %s", result.repository)
            result.error = f"{type(e).__name__}: {e}"
            return result

        result.dispatched = True
        result.sync_record = record
        result.message = "Synced" if record is not None else "Repository or branch not tracked"
        return result


class WebhookServer:
    """HTTP receiver for webhook deliveries.

    Validates the signature, acknowledges with 202 and processes the
    event in a background task.
    """

    def __init__(self, config: WebhookConfig, ingestor: WebhookIngestor) -> None:
        """Initialize webhook server.

        Args:
            config: Bind address, port and route.
            ingestor: Processes validated deliveries.
        """
        self._config = config
        self._ingestor = ingestor
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._tasks: set[asyncio.Task[WebhookResult]] = set()
        self.results: collections.deque[WebhookResult] = collections.deque(maxlen=RESULT_HISTORY)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self._config.path, self._handle_webhook)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _process(self, event_type: str, payload: bytes) -> WebhookResult:
        result = await self._ingestor.process(event_type, payload)
        self.results.append(result)
        return result

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        """Handle incoming webhook request."""
        payload = await request.read()
        event_type = request.headers.get(EVENT_HEADER, "")
        delivery = request.headers.get(DELIVERY_HEADER, "-")

        if not self._ingestor.validate_signature(payload, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("Webhook signature verification failed (delivery %s)", delivery)
            return web.json_response({"status": "forbidden"}, status=403)

        if event_type == "ping":
            return web.json_response({"status": "pong"})

        task = asyncio.create_task(self._process(event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(self._on_delivery_done)
        logger.info("Accepted %s delivery %s", event_type or "unknown", delivery)
        return web.json_response({"status": "accepted", "event": event_type}, status=202)

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({"status": "ok"})

    def _on_delivery_done(self, task: asyncio.Task[WebhookResult]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook delivery processing crashed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for deliveries still being processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self) -> None:
        """Start the webhook server."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()

        logger.info("Webhook server listening on %s:%d%s", self._config.host, self._config.port, self._config.path)

    async def stop(self) -> None:
        """Stop the webhook server after pending deliveries finish."""
        await self.drain()
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        logger.info("Webhook server stopped")

    async def run_forever(self) -> None:
        """Start server and run until cancelled."""
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            await self.stop()
