"""Typed async facade over the GitHub REST API for script repositories."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from script_orchestrator.config import GitHubConfig
    from script_orchestrator.github.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class RepositoryClientError(Exception):
    """Base error for remote repository calls."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(RepositoryClientError):
    """Network failure, timeout or server error; safe to retry."""


class AuthenticationError(RepositoryClientError):
    """Credentials missing, invalid or lacking access. Never retried."""


class NotFoundError(RepositoryClientError):
    """Repository, branch or path does not exist. Never retried."""


# Raised when a 2xx body does not have the documented structure
_SHAPE_ERRORS = (KeyError, TypeError, AttributeError, ValidationError)


def _unexpected_shape(url: str, error: Exception) -> RepositoryClientError:
    return RepositoryClientError(f"GET {url} returned an unexpected body: {type(error).__name__}: {error}")


class RemoteEntry(BaseModel):
    """One item of a directory listing."""

    name: str
    path: str
    sha: str
    size: int = 0
    type: str = "file"  # file, dir, symlink, submodule


class RemoteFile(BaseModel):
    """File content with its content hash."""

    name: str
    path: str
    sha: str
    size: int = 0
    content: str = ""


class RepositoryInfo(BaseModel):
    owner: str
    name: str
    full_name: str
    default_branch: str = "main"
    description: str = ""
    is_private: bool = False


class BranchInfo(BaseModel):
    name: str
    commit_sha: str


class RepositoryClient:
    """GitHub REST client where every request passes through the rate limiter.

    Each call runs reserve -> request -> update. Transient failures are
    retried with bounded exponential backoff; authentication and
    not-found errors are raised immediately. Quota rejections wait for
    the limiter and are retried without consuming the retry budget.
    """

    def __init__(
        self,
        config: GitHubConfig,
        rate_limiter: RateLimiter,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: Host URL, credentials and retry settings.
            rate_limiter: Shared quota tracker for this host.
            http_client: Optional preconfigured client (tests pass a MockTransport).
            sleep: Coroutine used for retry backoff.
        """
        self._config = config
        self._limiter = rate_limiter
        self._sleep = sleep
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": config.user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"

        if http_client is None:
            http_client = httpx.AsyncClient(
                base_url=config.api_url,
                headers=headers,
                timeout=config.timeout_seconds,
            )
        else:
            http_client.headers.update(headers)
        self._http = http_client

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> RepositoryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        delay = self._config.backoff_base_seconds * (2**attempt)
        return min(delay, self._config.backoff_max_seconds)

    @staticmethod
    def _is_quota_rejection(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        if response.headers.get("x-ratelimit-remaining") == "0":
            return True
        return "rate limit" in response.text.lower()

    async def _get(self, url: str, params: dict[str, str] | None = None) -> Any:
        """GET a JSON resource with rate limiting and retries."""
        attempt = 0
        quota_waits = 0
        while True:
            await self._limiter.reserve()
            try:
                response = await self._http.get(url, params=params)
            except httpx.TransportError as e:
                error: RepositoryClientError = TransientError(f"GET {url} failed: {e!r}")
            else:
                self._limiter.update_from_headers(response.headers)
                status = response.status_code
                if status < 400:
                    try:
                        return response.json()
                    except ValueError:
                        # Proxies and captive portals answer 200 with an HTML page
                        error = TransientError(f"GET {url} returned a non-JSON body (HTTP {status})", status)
                elif self._is_quota_rejection(response):
                    retry_after = response.headers.get("retry-after")
                    if retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                    else:
                        # No hint from the server; hold every caller until the window resets
                        self._limiter.exhaust()
                        delay = self._backoff(quota_waits)
                    quota_waits += 1
                    logger.warning("Quota rejection for %s (HTTP %d); retrying in %.1fs", url, status, delay)
                    await self._sleep(delay)
                    continue
                elif status in (401, 403):
                    raise AuthenticationError(f"GET {url} denied (HTTP {status})", status)
                elif status == 404:
                    raise NotFoundError(f"GET {url} not found", status)
                elif status >= 500 or status == 408:
                    error = TransientError(f"GET {url} failed (HTTP {status})", status)
                else:
                    raise RepositoryClientError(f"GET {url} rejected (HTTP {status}): {response.text[:200]}", status)

            if attempt >= self._config.max_retries:
                logger.error("Giving up on %s after %d attempts: %s", url, attempt + 1, error)
                raise error

            delay = self._backoff(attempt)
            attempt += 1
            logger.warning("Transient error on %s (attempt %d): %s; retrying in %.1fs", url, attempt, error, delay)
            await self._sleep(delay)

    @staticmethod
    def _repo_url(owner: str, name: str) -> str:
        return f"/repos/{quote(owner, safe='')}/{quote(name, safe='')}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        """Fetch repository metadata."""
        url = self._repo_url(owner, name)
        data = await self._get(url)
        try:
            return RepositoryInfo(
                owner=(data.get("owner") or {}).get("login") or owner,
                name=data.get("name") or name,
                full_name=data.get("full_name") or f"{owner}/{name}",
                default_branch=data.get("default_branch") or "main",
                description=data.get("description") or "",
                is_private=bool(data.get("private", False)),
            )
        except _SHAPE_ERRORS as e:
            raise _unexpected_shape(url, e) from e

    async def get_branch(self, owner: str, name: str, branch: str) -> BranchInfo:
        """Fetch a branch and its head commit SHA."""
        url = f"{self._repo_url(owner, name)}/branches/{quote(branch, safe='')}"
        data = await self._get(url)
        try:
            return BranchInfo(name=data.get("name") or branch, commit_sha=data["commit"]["sha"])
        except _SHAPE_ERRORS as e:
            raise _unexpected_shape(url, e) from e

    async def list_directory(
        self,
        owner: str,
        name: str,
        path: str = "",
        ref: str | None = None,
    ) -> list[RemoteEntry]:
        """List one directory of the repository."""
        url = f"{self._repo_url(owner, name)}/contents/{quote(path.strip('/'), safe='/')}"
        data = await self._get(url, params={"ref": ref} if ref else None)
        if isinstance(data, dict):
            # A file path returns a single object instead of a listing
            data = [data]
        try:
            return [
                RemoteEntry(
                    name=item["name"],
                    path=item["path"],
                    sha=item["sha"],
                    size=item.get("size") or 0,
                    type=item.get("type") or "file",
                )
                for item in data
            ]
        except _SHAPE_ERRORS as e:
            raise _unexpected_shape(url, e) from e

    async def list_files(
        self,
        owner: str,
        name: str,
        ref: str | None = None,
        extensions: Sequence[str] | None = None,
    ) -> list[RemoteEntry]:
        """Walk the repository and return files matching the given extensions."""
        wanted = tuple(e.lower() for e in (extensions or self._config.script_extensions))
        files: list[RemoteEntry] = []
        pending = [""]
        while pending:
            directory = pending.pop()
            for entry in await self.list_directory(owner, name, directory, ref):
                if entry.type == "dir":
                    pending.append(entry.path)
                elif entry.type == "file" and entry.path.lower().endswith(wanted):
                    files.append(entry)

        logger.info("Found %d script files in %s/%s@%s", len(files), owner, name, ref or "default")
        return sorted(files, key=lambda f: f.path)

    async def get_file(self, owner: str, name: str, path: str, ref: str | None = None) -> RemoteFile:
        """Fetch a file's decoded content and content hash."""
        url = f"{self._repo_url(owner, name)}/contents/{quote(path.strip('/'), safe='/')}"
        data = await self._get(url, params={"ref": ref} if ref else None)
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise RepositoryClientError(f"{path} in {owner}/{name} is not a file")

        raw = data.get("content") or ""
        encoding = data.get("encoding") or "base64"
        if encoding != "base64":
            raise RepositoryClientError(f"Unsupported content encoding {encoding!r} for {path}")
        try:
            content = base64.b64decode(raw).decode("utf-8-sig", errors="replace")
        except (binascii.Error, TypeError, ValueError) as e:
            raise RepositoryClientError(f"Cannot decode content of {path}: {e}") from e

        try:
            return RemoteFile(
                name=data.get("name") or path.rsplit("/", 1)[-1],
                path=data.get("path") or path,
                sha=data["sha"],
                size=data.get("size") or 0,
                content=content,
            )
        except _SHAPE_ERRORS as e:
            raise _unexpected_shape(url, e) from e
