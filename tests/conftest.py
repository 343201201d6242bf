"""Shared test fixtures for script-orchestrator."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from script_orchestrator.entities import CatalogEntry, RepositoryBinding
from script_orchestrator.execution.notifications import ExecutionEvent
from script_orchestrator.execution.runtime import OutputCallback, RunRequest, RunResult
from script_orchestrator.github.client import (
    BranchInfo,
    NotFoundError,
    RemoteEntry,
    RemoteFile,
    RepositoryInfo,
    TransientError,
)
from script_orchestrator.memory import InMemoryCatalogStore

DOCUMENTED_SCRIPT = """#Requires -Version 7.2
#Requires -Modules Az.Accounts, @{ModuleName='Az.Compute'; ModuleVersion='5.0'}

<#
.SYNOPSIS
    Restarts an application pool on a web server.

.DESCRIPTION
    Connects to the target server and recycles the named
    application pool, then waits until it reports Started.

.PARAMETER ComputerName
    Server hosting the pool.

.PARAMETER PoolName
    Name of the application pool.

.EXAMPLE
    ./Restart-Pool.ps1 -ComputerName web01 -PoolName api
    Import-Module NotARealDependency

.NOTES
    Requires the WebAdministration module on the target.
#>

[CmdletBinding()]
param(
    [Parameter(Mandatory = $true)]
    [string]$ComputerName,

    [Parameter(Mandatory = $true)]
    [ValidateNotNullOrEmpty()]
    [string]$PoolName,

    [int]$TimeoutSeconds = 60
)

Import-Module WebAdministration -MinimumVersion 1.0
using module Toolkit

function Wait-PoolStarted {
    param([string]$Name)
    Get-WebAppPoolState -Name $Name
}

Write-Output "Recycling $PoolName on $ComputerName"
Wait-PoolStarted -Name $PoolName
"""

DANGEROUS_SCRIPT = """<#
.SYNOPSIS
    Cleans up temp folders.
#>
param([string]$Path)

Remove-Item -Path $Path -Recurse -Force
Invoke-Expression "Get-ChildItem $Path"
"""

CLEAN_SCRIPT = """<#
.SYNOPSIS
    Prints a greeting.
#>
param([string]$Name = "world")
Write-Output "Hello, $Name"
"""


def git_sha(content: str) -> str:
    """Stand-in for a remote content hash."""
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------
# Clock
# ----------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock whose ``sleep`` moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ----------------------------------------------------------------------
# Remote repository
# ----------------------------------------------------------------------


class FakeRepositoryClient:
    """In-memory stand-in for RepositoryClient holding one repository's files."""

    def __init__(self, files: dict[str, str] | None = None, default_branch: str = "main") -> None:
        self.files: dict[str, str] = dict(files or {})
        self.default_branch = default_branch
        self.head_sha = "a" * 40
        self.failing_paths: set[str] = set()
        self.listing_error: Exception | None = None
        self.listing_gate: asyncio.Event | None = None
        self.fetched: list[str] = []
        self.listings = 0

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        return RepositoryInfo(
            owner=owner,
            name=name,
            full_name=f"{owner}/{name}",
            default_branch=self.default_branch,
            description="Operations scripts",
        )

    async def get_branch(self, owner: str, name: str, branch: str) -> BranchInfo:
        return BranchInfo(name=branch, commit_sha=self.head_sha)

    async def list_files(
        self,
        owner: str,
        name: str,
        ref: str | None = None,
        extensions: Any = None,
    ) -> list[RemoteEntry]:
        self.listings += 1
        if self.listing_gate is not None:
            await self.listing_gate.wait()
        if self.listing_error is not None:
            raise self.listing_error
        return [
            RemoteEntry(name=path.rsplit("/", 1)[-1], path=path, sha=git_sha(content), size=len(content))
            for path, content in sorted(self.files.items())
        ]

    async def get_file(self, owner: str, name: str, path: str, ref: str | None = None) -> RemoteFile:
        self.fetched.append(path)
        if path in self.failing_paths:
            raise TransientError(f"GET {path} failed (HTTP 502)", 502)
        if path not in self.files:
            raise NotFoundError(f"GET {path} not found", 404)
        content = self.files[path]
        return RemoteFile(
            name=path.rsplit("/", 1)[-1],
            path=path,
            sha=git_sha(content),
            size=len(content),
            content=content,
        )


@pytest.fixture
def remote() -> FakeRepositoryClient:
    return FakeRepositoryClient()


@pytest.fixture
def store() -> InMemoryCatalogStore:
    return InMemoryCatalogStore()


@pytest.fixture
def binding(store: InMemoryCatalogStore) -> RepositoryBinding:
    """The acme/scripts repository, tracked on main."""
    repo = RepositoryBinding.create("acme", "scripts", default_branch="main")
    store.upsert_binding(repo)
    return repo


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


class FakeRuntime:
    """Runtime that sleeps instead of running anything and tracks concurrency."""

    def __init__(
        self,
        delay: float = 0.0,
        exit_code: int = 0,
        output: str = "done",
        version_text: str = "7.4.1",
    ) -> None:
        self.delay = delay
        self.exit_code = exit_code
        self.output = output
        self.version_text = version_text
        self.version_error: Exception | None = None
        self.requests: list[RunRequest] = []
        self.active = 0
        self.peak = 0
        self.killed = 0

    async def run(self, request: RunRequest, on_output: OutputCallback | None = None) -> RunResult:
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if on_output is not None:
                on_output("stdout", self.output)
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.killed += 1
            raise
        finally:
            self.active -= 1
        return RunResult(exit_code=self.exit_code, output=self.output + "\n", peak_memory_kb=2048)

    async def version(self) -> str:
        if self.version_error is not None:
            raise self.version_error
        return self.version_text


class RecordingSink:
    """Progress sink keeping every event."""

    def __init__(self) -> None:
        self.events: list[ExecutionEvent] = []

    async def publish(self, event: ExecutionEvent) -> None:
        self.events.append(event)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_entry(store: InMemoryCatalogStore) -> Callable[..., CatalogEntry]:
    """Store a catalog entry built from script text."""

    def _make(entry_id: str = "acme/scripts/main/Hello.ps1", content: str = CLEAN_SCRIPT, **kwargs: Any) -> CatalogEntry:
        entry = CatalogEntry(id=entry_id, name=CatalogEntry.name_from_path(entry_id), content=content, **kwargs)
        store.upsert_entry(entry)
        return entry

    return _make


# ----------------------------------------------------------------------
# Sample scripts
# ----------------------------------------------------------------------


@pytest.fixture
def documented_script() -> str:
    return DOCUMENTED_SCRIPT


@pytest.fixture
def dangerous_script() -> str:
    return DANGEROUS_SCRIPT


@pytest.fixture
def clean_script() -> str:
    return CLEAN_SCRIPT


@pytest.fixture
def sha() -> Callable[[str], str]:
    return git_sha
