"""Bounded concurrent script execution with durable execution records."""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from typing import TYPE_CHECKING, Any

from script_orchestrator.config import ExecutionConfig
from script_orchestrator.entities.analysis import RuntimeVersion
from script_orchestrator.entities.catalog import CatalogEntry, utc_now
from script_orchestrator.entities.records import ExecutionMetrics, ExecutionRecord, ExecutionState, ValidationReport
from script_orchestrator.execution.notifications import ExecutionEvent, ExecutionEventKind, NullProgressSink
from script_orchestrator.execution.runtime import ProcessRuntime, RunRequest
from script_orchestrator.parsing.parser import ScriptParser

if TYPE_CHECKING:
    from script_orchestrator.execution.notifications import ProgressSink
    from script_orchestrator.execution.runtime import ScriptRuntime
    from script_orchestrator.memory.catalog_store import CatalogStore

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"


class ExecutionError(Exception):
    """Base error for execution requests."""


class ScriptNotFoundError(ExecutionError, LookupError):
    """The requested catalog entry does not exist."""


class ScriptInactiveError(ExecutionError):
    """The requested catalog entry is deactivated."""


class ScriptRejectedError(ExecutionError):
    """The script is high risk and high-risk execution is blocked."""


class ExecutionNotFoundError(ExecutionError, LookupError):
    """No execution with the given ID is known."""


class ExecutionEngine:
    """Runs catalogued or ad hoc scripts under concurrency, time and privilege limits.

    ``submit`` records a Pending execution and returns at once; a worker
    task waits for a slot on a FIFO semaphore, marks the record Running,
    hands the script to the runtime and writes the terminal state. Only
    that worker mutates the record after admission.

    Usage:
        engine = ExecutionEngine(store, config)
        record = await engine.submit(entry_id, {"Name": "web01"})
        finished = await engine.wait(record.id)
    """

    def __init__(
        self,
        store: CatalogStore,
        config: ExecutionConfig | None = None,
        runtime: ScriptRuntime | None = None,
        sink: ProgressSink | None = None,
        parser: ScriptParser | None = None,
        host: str | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Catalog entries are read from and execution records written to it.
            config: Execution limits (defaults when omitted).
            runtime: Script runtime; a ProcessRuntime over the config when omitted.
            sink: Progress event receiver.
            parser: Parser used by ``validate``.
            host: Host name recorded on executions.
        """
        self._store = store
        self._config = config or ExecutionConfig()
        self._runtime = runtime or ProcessRuntime(self._config)
        self._sink = sink or NullProgressSink()
        self._parser = parser or ScriptParser()
        self._host = host or socket.gethostname()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_executions)
        self._tasks: dict[str, asyncio.Task[ExecutionRecord]] = {}
        # Workers that have taken their first step, and early cancel requests for the rest
        self._started: set[str] = set()
        self._cancel_on_start: set[str] = set()
        self._notifications: set[asyncio.Task[None]] = set()
        self._runtime_version: str | None = None

    @property
    def max_concurrency(self) -> int:
        return self._config.max_concurrent_executions

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _resolve_timeout(self, requested: int | None) -> int:
        timeout = requested if requested and requested > 0 else self._config.default_timeout_seconds
        if timeout > self._config.max_timeout_seconds:
            logger.warning("Timeout %ds exceeds maximum, clamped to %ds", timeout, self._config.max_timeout_seconds)
            timeout = self._config.max_timeout_seconds
        return timeout

    def _require_entry(self, script_id: str) -> CatalogEntry:
        entry = self._store.get_entry(script_id)
        if entry is None:
            raise ScriptNotFoundError(f"Script {script_id} not found")
        if not entry.is_active:
            raise ScriptInactiveError(f"Script {script_id} is not active")
        return entry

    async def submit(
        self,
        script_id: str,
        parameters: dict[str, Any] | None = None,
        timeout_seconds: int | None = None,
        constrained: bool | None = None,
    ) -> ExecutionRecord:
        """Admit a catalogued script for execution.

        Args:
            script_id: Catalog entry ID.
            parameters: Script parameters by name.
            timeout_seconds: Override for the entry's timeout, clamped to the maximum.
            constrained: Override for the configured constrained mode.

        Returns:
            The Pending execution record.

        Raises:
            ScriptNotFoundError: Unknown script.
            ScriptInactiveError: Script is deactivated.
            ScriptRejectedError: Script is high risk and blocking is configured.
        """
        entry = self._require_entry(script_id)
        if self._config.block_high_risk and entry.security.is_high_risk:
            raise ScriptRejectedError(f"Script {script_id} is classified high risk")
        timeout = self._resolve_timeout(timeout_seconds or entry.timeout_seconds)
        return await self._admit(entry.id, entry.content, parameters, timeout, constrained)

    async def submit_content(
        self,
        content: str,
        parameters: dict[str, Any] | None = None,
        timeout_seconds: int | None = None,
        constrained: bool | None = None,
    ) -> ExecutionRecord:
        """Admit ad hoc script text for execution."""
        return await self._admit(None, content, parameters, self._resolve_timeout(timeout_seconds), constrained)

    async def _admit(
        self,
        script_id: str | None,
        content: str,
        parameters: dict[str, Any] | None,
        timeout: int,
        constrained: bool | None,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            script_id=script_id,
            parameters=dict(parameters or {}),
            timeout_seconds=timeout,
            constrained=self._config.constrained_mode_default if constrained is None else constrained,
            memory_budget_mb=self._config.memory_budget_mb,
            host=self._host,
        )
        self._store.add_execution(record)
        logger.info("Admitted execution %s for %s (timeout %ds)", record.id, script_id or "ad hoc content", timeout)

        task = asyncio.create_task(self._execute(record.model_copy(deep=True), content))
        self._tasks[record.id] = task
        task.add_done_callback(lambda t, execution_id=record.id: self._on_worker_done(execution_id, t))
        self._notify(ExecutionEvent(execution_id=record.id, kind=ExecutionEventKind.STATUS, state=record.state))
        return record

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _runtime_version_text(self) -> str:
        if self._runtime_version is None:
            try:
                self._runtime_version = await self._runtime.version() or UNKNOWN_VERSION
            except Exception as e:
                logger.warning("Could not determine runtime version: %s", e)
                self._runtime_version = UNKNOWN_VERSION
        return self._runtime_version

    async def _execute(self, record: ExecutionRecord, content: str) -> ExecutionRecord:
        self._started.add(record.id)
        stdout: list[str] = []
        stderr: list[str] = []
        started = 0.0

        def on_output(stream: str, line: str) -> None:
            (stderr if stream == "stderr" else stdout).append(line + "\n")
            self._notify(
                ExecutionEvent(execution_id=record.id, kind=ExecutionEventKind.OUTPUT, stream=stream, data=line)
            )

        try:
            if record.id in self._cancel_on_start:
                raise asyncio.CancelledError
            async with self._semaphore:
                record.state = ExecutionState.RUNNING
                record.started_at = utc_now()
                record.runtime_version = await self._runtime_version_text()
                self._store.update_execution(record)
                self._notify(ExecutionEvent(execution_id=record.id, kind=ExecutionEventKind.STATUS, state=record.state))
                started = time.monotonic()

                request = RunRequest(
                    execution_id=record.id,
                    content=content,
                    parameters=record.parameters,
                    constrained=record.constrained,
                    memory_budget_mb=record.memory_budget_mb,
                )
                try:
                    result = await asyncio.wait_for(self._runtime.run(request, on_output), timeout=record.timeout_seconds)
                except TimeoutError:
                    record.state = ExecutionState.FAILED
                    record.error = f"Execution timed out after {record.timeout_seconds}s"
                    record.output = "".join(stdout)
                    record.error_output = "".join(stderr)
                    logger.warning("Execution %s timed out after %ds", record.id, record.timeout_seconds)
                except Exception as e:
                    record.state = ExecutionState.FAILED
                    record.error = f"{type(e).__name__}: {e}"
                    record.output = "".join(stdout)
                    record.error_output = "".join(stderr)
                    logger.exception("Execution %s failed in the runtime", record.id)
                else:
                    record.exit_code = result.exit_code
                    record.output = result.output or "".join(stdout)
                    record.error_output = result.error_output or "".join(stderr)
                    record.metadata["peak_memory_kb"] = result.peak_memory_kb
                    if result.exit_code == 0:
                        record.state = ExecutionState.COMPLETED
                    else:
                        record.state = ExecutionState.FAILED
                        record.error = f"Script exited with code {result.exit_code}"
        except asyncio.CancelledError:
            # Cancellation is a terminal outcome of the record, not of the worker
            record.state = ExecutionState.CANCELLED
            record.error = "Execution was cancelled"
            record.output = "".join(stdout)
            record.error_output = "".join(stderr)
            logger.info("Execution %s cancelled", record.id)

        record.completed_at = utc_now()
        record.duration_ms = int((time.monotonic() - started) * 1000) if started else 0
        record.metadata.setdefault("memory_budget_mb", record.memory_budget_mb)
        self._store.update_execution(record)

        logger.info("Execution %s finished: %s in %dms", record.id, record.state, record.duration_ms)
        self._notify(
            ExecutionEvent(
                execution_id=record.id,
                kind=ExecutionEventKind.COMPLETED,
                state=record.state,
                duration_ms=record.duration_ms,
            )
        )
        return record

    def _on_worker_done(self, execution_id: str, task: asyncio.Task[ExecutionRecord]) -> None:
        self._tasks.pop(execution_id, None)
        self._started.discard(execution_id)
        self._cancel_on_start.discard(execution_id)
        if task.cancelled():
            logger.warning("Execution %s was torn down before its worker recorded an outcome", execution_id)

    def _request_cancel(self, execution_id: str, task: asyncio.Task[ExecutionRecord]) -> None:
        if execution_id in self._started:
            task.cancel()
        else:
            # Not stepped yet; the worker checks this on entry
            self._cancel_on_start.add(execution_id)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def _publish(self, event: ExecutionEvent) -> None:
        try:
            await self._sink.publish(event)
        except Exception:
            logger.exception("Progress sink failed for execution %s", event.execution_id)

    def _notify(self, event: ExecutionEvent) -> None:
        """Fire-and-forget delivery to the progress sink."""
        task = asyncio.create_task(self._publish(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> ExecutionRecord | None:
        return self._store.get_execution(execution_id)

    def list_running(self) -> list[ExecutionRecord]:
        return self._store.list_executions(ExecutionState.RUNNING)

    def list_pending(self) -> list[ExecutionRecord]:
        return self._store.list_executions(ExecutionState.PENDING)

    def get_metrics(self, execution_id: str) -> ExecutionMetrics | None:
        record = self._store.get_execution(execution_id)
        return ExecutionMetrics.from_record(record) if record else None

    async def wait(self, execution_id: str, timeout: float | None = None) -> ExecutionRecord:
        """Wait for an execution to reach a terminal state.

        Cancelling or timing out the wait leaves the execution running.
        """
        task = self._tasks.get(execution_id)
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise TimeoutError(f"Execution {execution_id} still running after {timeout}s")
            error = None if task.cancelled() else task.exception()
            if error is not None:
                raise error
        record = self._store.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return record

    async def cancel(self, execution_id: str) -> ExecutionRecord:
        """Cancel a pending or running execution and return its final record.

        An execution that already finished is returned unchanged.
        """
        task = self._tasks.get(execution_id)
        if task is None:
            record = self._store.get_execution(execution_id)
            if record is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            return record

        logger.info("Cancelling execution %s", execution_id)
        self._request_cancel(execution_id, task)
        await asyncio.wait({task})
        return await self.wait(execution_id)

    async def shutdown(self) -> None:
        """Cancel every unfinished execution and flush pending notifications."""
        tasks = list(self._tasks.values())
        for execution_id, task in list(self._tasks.items()):
            self._request_cancel(execution_id, task)
        if tasks:
            await asyncio.wait(tasks)
        if self._notifications:
            await asyncio.wait(list(self._notifications))
        logger.info("Execution engine shut down (%d executions cancelled)", len(tasks))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, script_id: str, parameters: dict[str, Any] | None = None) -> ValidationReport:
        """Check whether a catalogued script could run, without running it."""
        report = ValidationReport(script_id=script_id)
        entry = self._store.get_entry(script_id)
        if entry is None:
            report.errors.append(f"Script {script_id} not found")
            return report
        if not entry.is_active:
            report.errors.append(f"Script {script_id} is not active")
        if not entry.content.strip():
            report.errors.append("Script content is empty")
            return report

        parsed = self._parser.parse(entry.content, entry.source_path or entry.name)
        report.risk_level = str(parsed.security.risk_level)
        report.requires_elevation = parsed.security.requires_elevation
        report.dependencies = [str(d) for d in parsed.dependencies]
        report.required_version = str(parsed.required_version) if parsed.required_version else None

        report.warnings.extend(f"Malformed script: {d}" for d in parsed.diagnostics)
        issues = [f"Security issue: {issue}" for issue in parsed.security.issues]
        if parsed.security.is_high_risk and self._config.block_high_risk:
            report.errors.extend(issues)
        else:
            report.warnings.extend(issues)
        if parsed.security.requires_elevation:
            report.warnings.append("Script requires elevated privileges")

        declared = parsed.metadata.parameters
        if declared and not parameters:
            report.warnings.append("Script defines parameters but none were provided")
        for name in parameters or {}:
            if declared and name.lower() not in {p.lower() for p in declared}:
                report.warnings.append(f"Unknown parameter: {name}")

        if parsed.required_version is not None:
            available = RuntimeVersion.parse(await self._runtime_version_text())
            if available is not None and available.as_tuple() < parsed.required_version.as_tuple():
                report.errors.append(f"Script requires runtime {parsed.required_version}, found {available}")

        report.is_valid = not report.errors
        logger.info(
            "Validated %s: valid=%s, %d errors, %d warnings",
            script_id,
            report.is_valid,
            len(report.errors),
            len(report.warnings),
        )
        return report
