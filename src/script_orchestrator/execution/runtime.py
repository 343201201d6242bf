"""Script runtime collaborator: runs script text in an external process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from script_orchestrator.config import ExecutionConfig

logger = logging.getLogger(__name__)

# (stream name, line) for each line a running script writes
OutputCallback = Callable[[str, str], None]


class RunRequest(BaseModel):
    """What the runtime needs to run one script."""

    execution_id: str
    content: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    constrained: bool = True
    memory_budget_mb: int | None = None


class RunResult(BaseModel):
    exit_code: int
    output: str = ""
    error_output: str = ""
    peak_memory_kb: int | None = None


@runtime_checkable
class ScriptRuntime(Protocol):
    """Executes script text. Cancelling ``run`` must stop the script."""

    async def run(self, request: RunRequest, on_output: OutputCallback | None = None) -> RunResult: ...

    async def version(self) -> str: ...


def format_arguments(parameters: dict[str, Any]) -> list[str]:
    """Render parameters as ``-Name value`` command-line arguments.

    True becomes a bare switch, False an explicit ``-Name:$false`` and
    lists a comma-separated value.
    """
    args: list[str] = []
    for name, value in parameters.items():
        if value is True:
            args.append(f"-{name}")
        elif value is False:
            args.append(f"-{name}:$false")
        elif value is None:
            continue
        elif isinstance(value, (list, tuple)):
            args.extend([f"-{name}", ",".join(str(v) for v in value)])
        else:
            args.extend([f"-{name}", str(value)])
    return args


PROC_ROOT = Path("/proc")

# Seconds between peak memory samples of a running script
MEMORY_SAMPLE_INTERVAL = 0.05


def read_peak_rss_kb(pid: int, proc_root: Path = PROC_ROOT) -> int | None:
    """High-water resident memory (VmHWM) of one live process, in kilobytes.

    Returns None where procfs is unavailable or the process is gone.
    """
    try:
        with (proc_root / str(pid) / "status").open(encoding="ascii", errors="replace") as f:
            for line in f:
                if line.startswith("VmHWM:"):
                    return int(line.split()[1])
    except (OSError, ValueError, IndexError):
        return None
    return None


class _MemoryWatch:
    """Samples one process's peak RSS until cancelled."""

    def __init__(self, pid: int, interval: float = MEMORY_SAMPLE_INTERVAL) -> None:
        self.pid = pid
        self.interval = interval
        self.peak_kb: int | None = None

    def sample(self) -> None:
        value = read_peak_rss_kb(self.pid)
        if value is not None and (self.peak_kb is None or value > self.peak_kb):
            self.peak_kb = value

    async def run(self) -> None:
        while True:
            self.sample()
            await asyncio.sleep(self.interval)


class ProcessRuntime:
    """Runs scripts with the configured command via ``asyncio`` subprocesses.

    The script is written to a temporary file; in constrained mode the
    configured prelude line is prepended. Both pipes are streamed line by
    line to the output callback. Cancellation kills the process.
    """

    def __init__(self, config: ExecutionConfig) -> None:
        self._config = config

    def build_command(self, script_path: Path, parameters: dict[str, Any]) -> list[str]:
        return [*self._config.runtime_command, str(script_path), *format_arguments(parameters)]

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        name: str,
        sink: list[str],
        on_output: OutputCallback | None,
    ) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace")
            sink.append(line)
            if on_output is not None:
                on_output(name, line.rstrip("\r\n"))

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def run(self, request: RunRequest, on_output: OutputCallback | None = None) -> RunResult:
        content = request.content
        if request.constrained and self._config.constrained_prelude:
            content = f"{self._config.constrained_prelude}\n{content}"

        fd, name = tempfile.mkstemp(prefix=f"exec-{request.execution_id[:12]}-", suffix=self._config.script_suffix)
        script_path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)

            command = self.build_command(script_path, request.parameters)
            logger.debug("Starting %s", command[0])
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )

            stdout: list[str] = []
            stderr: list[str] = []
            watch = _MemoryWatch(proc.pid)
            watcher = asyncio.create_task(watch.run())
            try:
                assert proc.stdout is not None and proc.stderr is not None
                await asyncio.gather(
                    self._pump(proc.stdout, "stdout", stdout, on_output),
                    self._pump(proc.stderr, "stderr", stderr, on_output),
                )
                watch.sample()
                exit_code = await proc.wait()
            except asyncio.CancelledError:
                self._kill(proc)
                await proc.wait()
                logger.info("Killed runtime process for execution %s", request.execution_id)
                raise
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher

            return RunResult(
                exit_code=exit_code,
                output="".join(stdout),
                error_output="".join(stderr),
                peak_memory_kb=watch.peak_kb,
            )
        finally:
            script_path.unlink(missing_ok=True)

    async def version(self) -> str:
        """Version string printed by the configured version command."""
        proc = await asyncio.create_subprocess_exec(
            *self._config.version_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=30)
        except TimeoutError:
            self._kill(proc)
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise RuntimeError(f"Version command exited with code {proc.returncode}")
        return out.decode("utf-8", errors="replace").strip()
