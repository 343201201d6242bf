"""Remote repository host access: rate limiting and REST client."""

from script_orchestrator.github.client import (
    AuthenticationError,
    BranchInfo,
    NotFoundError,
    RemoteEntry,
    RemoteFile,
    RepositoryClient,
    RepositoryClientError,
    RepositoryInfo,
    TransientError,
)
from script_orchestrator.github.rate_limiter import RateLimiter, RateLimitState

__all__ = [
    "AuthenticationError",
    "BranchInfo",
    "NotFoundError",
    "RateLimitState",
    "RateLimiter",
    "RemoteEntry",
    "RemoteFile",
    "RepositoryClient",
    "RepositoryClientError",
    "RepositoryInfo",
    "TransientError",
]
