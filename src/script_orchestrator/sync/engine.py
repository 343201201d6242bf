"""Repository synchronization: reconcile remote script state into the catalog."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from script_orchestrator.entities.catalog import CatalogEntry, RepositoryBinding, RepositoryFile, RepositoryStatus, utc_now
from script_orchestrator.entities.records import SyncKind, SyncOutcome, SyncRecord, SyncStatus, SyncTrigger
from script_orchestrator.github.client import NotFoundError, RepositoryClientError
from script_orchestrator.memory.catalog_store import PersistenceError
from script_orchestrator.parsing.parser import ScriptParser

if TYPE_CHECKING:
    from script_orchestrator.github.client import RemoteFile, RepositoryClient
    from script_orchestrator.memory.catalog_store import CatalogStore

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".ps1", ".psm1")


class SyncConflictError(Exception):
    """A sync for the binding is already running."""

    def __init__(self, binding_id: str) -> None:
        super().__init__(f"Sync already running for {binding_id}")
        self.binding_id = binding_id


class RepositoryNotRegisteredError(LookupError):
    """No binding exists for the requested repository."""


@dataclass
class _RunTally:
    processed: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    file_errors: dict[str, str] = field(default_factory=dict)


class SyncEngine:
    """Full and incremental synchronization of repository bindings.

    A run diffs remote files against the tracked RepositoryFile records by
    content hash: absent locally means added, a different hash means
    updated, tracked but absent remotely means removed. Each file is
    committed on its own, so a failure later in the run keeps earlier
    commits. Every run appends exactly one SyncRecord, except a run
    refused with SyncConflictError which writes nothing.

    Usage:
        engine = SyncEngine(client, store)
        binding = await engine.register_repository("acme", "scripts")
        record = await engine.sync_repository(binding.id)
    """

    def __init__(
        self,
        client: RepositoryClient,
        store: CatalogStore,
        parser: ScriptParser | None = None,
        extensions: Sequence[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            client: Remote repository client.
            store: Catalog persistence.
            parser: Script parser (default parser when omitted).
            extensions: File extensions treated as scripts.
            clock: Returns the current UTC time.
        """
        self._client = client
        self._store = store
        self._parser = parser or ScriptParser()
        self._extensions = tuple(e.lower() for e in (extensions or DEFAULT_EXTENSIONS))
        self._clock = clock
        self._lock = threading.Lock()
        self._active: set[str] = set()

    @property
    def client(self) -> RepositoryClient:
        return self._client

    @property
    def store(self) -> CatalogStore:
        return self._store

    # ------------------------------------------------------------------
    # Registration and status
    # ------------------------------------------------------------------

    async def register_repository(self, owner: str, name: str, branch: str | None = None) -> RepositoryBinding:
        """Create or refresh the binding for a repository.

        Args:
            owner: Repository owner.
            name: Repository name.
            branch: Tracked branch; the remote default branch when omitted.

        Returns:
            The stored binding.
        """
        binding_id = RepositoryBinding.make_id(owner, name)
        binding = self._store.get_binding(binding_id) or RepositoryBinding.create(owner, name)

        if branch is None:
            info = await self._client.get_repository(owner, name)
            binding.default_branch = info.default_branch
            binding.description = info.description
            binding.is_private = info.is_private
        else:
            binding.default_branch = branch
        binding.status = RepositoryStatus.ACTIVE

        self._store.upsert_binding(binding)
        logger.info("Registered %s (branch %s)", binding.full_name, binding.default_branch)
        return binding

    def set_status(self, binding_id: str, status: RepositoryStatus) -> RepositoryBinding:
        """Change a binding's lifecycle status."""
        binding = self._require_binding(binding_id)
        binding.status = status
        self._store.upsert_binding(binding)
        return binding

    def is_running(self, binding_id: str) -> bool:
        with self._lock:
            return binding_id.lower() in self._active

    def get_history(self, binding_id: str, limit: int = 50) -> list[SyncRecord]:
        """Sync records for the binding, most recent first."""
        return self._store.list_sync_records(binding_id.lower(), limit=limit)

    def get_status(self, binding_id: str) -> SyncStatus:
        binding_id = binding_id.lower()
        history = self._store.list_sync_records(binding_id, limit=1000)
        last_success = next((r for r in history if r.outcome == SyncOutcome.SUCCESS), None)
        return SyncStatus(
            binding_id=binding_id,
            is_running=self.is_running(binding_id),
            last_outcome=history[0].outcome if history else None,
            last_started_at=history[0].started_at if history else None,
            last_successful_sync=last_success.completed_at if last_success else None,
        )

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def sync_repository(self, binding_id: str, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncRecord:
        """Fully reconcile the binding's tracked branch.

        Raises:
            RepositoryNotRegisteredError: Unknown binding.
            SyncConflictError: A sync for the binding is already running.
            PersistenceError: The store failed; recorded first when possible.
        """
        binding = self._require_binding(binding_id)
        with self._claim(binding.id):
            return await self._run(binding, SyncKind.FULL, trigger, paths=None)

    async def sync_incremental(
        self,
        full_name: str,
        paths: Sequence[str] | None,
        branch: str | None = None,
        trigger: SyncTrigger = SyncTrigger.WEBHOOK,
    ) -> SyncRecord | None:
        """Reconcile only the named paths of a repository.

        With no paths the full listing is reconciled (still recorded as
        incremental). Returns None without syncing when the repository is
        not tracked, not active, or the branch is not the tracked one.

        Raises:
            SyncConflictError: A sync for the binding is already running.
            PersistenceError: The store failed; recorded first when possible.
        """
        owner, _, name = full_name.partition("/")
        binding = self._store.get_binding(RepositoryBinding.make_id(owner, name)) if name else None
        if binding is None or not binding.is_active:
            logger.info("Ignoring change for untracked repository %s", full_name)
            return None
        if branch is not None and branch != binding.default_branch:
            logger.info("Ignoring change on untracked branch %s of %s", branch, full_name)
            return None

        with self._claim(binding.id):
            return await self._run(binding, SyncKind.INCREMENTAL, trigger, paths=list(paths) if paths else None)

    async def sync_all(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> dict[str, SyncRecord | BaseException]:
        """Sync every active binding concurrently.

        Returns:
            Binding ID mapped to its SyncRecord, or to the exception that
            stopped it (conflict, persistence failure).
        """
        bindings = self._store.list_bindings(RepositoryStatus.ACTIVE)
        results = await asyncio.gather(
            *(self.sync_repository(b.id, trigger) for b in bindings),
            return_exceptions=True,
        )
        outcome: dict[str, SyncRecord | BaseException] = {}
        for binding, result in zip(bindings, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("Sync of %s did not complete: %s", binding.id, result)
            outcome[binding.id] = result
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_binding(self, binding_id: str) -> RepositoryBinding:
        binding = self._store.get_binding(binding_id)
        if binding is None:
            raise RepositoryNotRegisteredError(f"Repository {binding_id} is not registered")
        return binding

    @contextmanager
    def _claim(self, binding_id: str) -> Iterator[None]:
        with self._lock:
            if binding_id in self._active:
                raise SyncConflictError(binding_id)
            self._active.add(binding_id)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(binding_id)

    def _is_script(self, path: str) -> bool:
        return path.lower().endswith(self._extensions)

    async def _run(
        self,
        binding: RepositoryBinding,
        kind: SyncKind,
        trigger: SyncTrigger,
        paths: list[str] | None,
    ) -> SyncRecord:
        branch = binding.default_branch
        started_at = self._clock()
        start = time.monotonic()
        tally = _RunTally()
        error: str | None = None
        fatal: PersistenceError | None = None

        logger.info("Starting %s sync of %s@%s (%s)", kind, binding.full_name, branch, trigger)
        try:
            if paths is None:
                await self._reconcile_listing(binding, branch, tally)
            else:
                await self._reconcile_paths(binding, branch, paths, tally)
        except PersistenceError as e:
            fatal = e
            error = f"Store failure: {e}"
            logger.exception("Store failure during sync of %s", binding.full_name)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("Sync of %s failed", binding.full_name)

        if error is not None:
            outcome = SyncOutcome.FAILURE
        elif tally.file_errors:
            outcome = SyncOutcome.PARTIAL
        else:
            outcome = SyncOutcome.SUCCESS

        completed_at = self._clock()
        record = SyncRecord(
            binding_id=binding.id,
            kind=kind,
            trigger=trigger,
            outcome=outcome,
            processed=tally.processed,
            added=tally.added,
            updated=tally.updated,
            removed=tally.removed,
            failed=len(tally.file_errors),
            duration_ms=int((time.monotonic() - start) * 1000),
            error=error,
            file_errors=tally.file_errors,
            started_at=started_at,
            completed_at=completed_at,
        )

        try:
            self._store.add_sync_record(record)
            if outcome != SyncOutcome.FAILURE:
                current = self._store.get_binding(binding.id) or binding
                current.last_sync_at = completed_at
                self._store.upsert_binding(current)
        except PersistenceError:
            if fatal is None:
                raise
            logger.exception("Could not record failed sync of %s", binding.full_name)
        if fatal is not None:
            raise fatal

        logger.info(
            "Sync of %s finished: %s (+%d ~%d -%d, %d failed) in %dms",
            binding.full_name,
            outcome,
            record.added,
            record.updated,
            record.removed,
            record.failed,
            record.duration_ms,
        )
        return record

    async def _reconcile_listing(self, binding: RepositoryBinding, branch: str, tally: _RunTally) -> None:
        remote = {
            entry.path: entry.sha
            for entry in await self._client.list_files(binding.owner, binding.name, ref=branch, extensions=self._extensions)
            if self._is_script(entry.path)
        }
        local = {f.path: f for f in self._store.list_files(binding.id, branch)}

        for path in sorted(remote.keys() | local.keys()):
            tally.processed += 1
            tracked = local.get(path)
            if path not in remote:
                if tracked is not None:
                    self._remove(tracked)
                    tally.removed += 1
                continue
            if tracked is not None and tracked.sha == remote[path]:
                continue

            try:
                remote_file = await self._client.get_file(binding.owner, binding.name, path, ref=branch)
            except NotFoundError:
                # Listed but gone by the time it was fetched
                if tracked is not None:
                    self._remove(tracked)
                    tally.removed += 1
                continue
            except RepositoryClientError as e:
                logger.warning("Failed to fetch %s from %s: %s", path, binding.full_name, e)
                tally.file_errors[path] = str(e)
                continue

            self._apply(binding, branch, path, remote_file, tracked)
            if tracked is None:
                tally.added += 1
            else:
                tally.updated += 1

    async def _reconcile_paths(
        self,
        binding: RepositoryBinding,
        branch: str,
        paths: list[str],
        tally: _RunTally,
    ) -> None:
        for path in dict.fromkeys(p.lstrip("/") for p in paths):
            if not self._is_script(path):
                continue
            tally.processed += 1
            tracked = self._store.get_file(binding.id, path, branch)
            try:
                remote_file = await self._client.get_file(binding.owner, binding.name, path, ref=branch)
            except NotFoundError:
                if tracked is not None:
                    self._remove(tracked)
                    tally.removed += 1
                continue
            except RepositoryClientError as e:
                logger.warning("Failed to fetch %s from %s: %s", path, binding.full_name, e)
                tally.file_errors[path] = str(e)
                continue

            if tracked is not None and tracked.sha == remote_file.sha:
                continue
            self._apply(binding, branch, path, remote_file, tracked)
            if tracked is None:
                tally.added += 1
            else:
                tally.updated += 1

    def _apply(
        self,
        binding: RepositoryBinding,
        branch: str,
        path: str,
        remote_file: RemoteFile,
        tracked: RepositoryFile | None,
    ) -> None:
        """Parse a fetched file and commit its catalog entry and tracking record."""
        parsed = self._parser.parse(remote_file.content, path)
        now = self._clock()
        entry_id = tracked.catalog_entry_id if tracked else CatalogEntry.generate_id(binding.id, branch, path)
        content_hash = CatalogEntry.compute_hash(remote_file.content)
        derived = {
            "content": remote_file.content,
            "content_hash": content_hash,
            "declared_version": parsed.metadata.version,
            "description": parsed.metadata.synopsis or parsed.metadata.description,
            "tags": parsed.metadata.tags,
            "is_active": True,
            "required_version": parsed.required_version,
            "security": parsed.security,
            "metadata": parsed.metadata,
            "dependencies": parsed.dependencies,
            "updated_at": now,
        }

        existing = self._store.get_entry(entry_id)
        if existing is None:
            entry = CatalogEntry(
                id=entry_id,
                name=CatalogEntry.name_from_path(path),
                source_binding_id=binding.id,
                source_path=path,
                created_at=now,
                **derived,
            )
        else:
            version = existing.version + 1 if existing.content_hash != content_hash else existing.version
            entry = existing.model_copy(update={**derived, "version": version})

        self._store.upsert_entry(entry)
        self._store.upsert_file(
            RepositoryFile(
                binding_id=binding.id,
                path=path,
                branch=branch,
                sha=remote_file.sha,
                catalog_entry_id=entry_id,
                metadata=parsed.metadata,
                security=parsed.security,
                last_modified=now,
            )
        )
        logger.debug("Committed %s (version %d, risk %s)", entry_id, entry.version, parsed.security.risk_level)

    def _remove(self, tracked: RepositoryFile) -> None:
        """Drop a tracked file and deactivate its catalog entry."""
        self._store.delete_file(tracked.binding_id, tracked.path, tracked.branch)
        entry = self._store.get_entry(tracked.catalog_entry_id)
        if entry is not None and entry.is_active:
            self._store.upsert_entry(entry.model_copy(update={"is_active": False, "updated_at": self._clock()}))
        logger.debug("Removed %s from %s", tracked.path, tracked.binding_id)
