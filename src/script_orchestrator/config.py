"""Configuration for repository sync, webhooks, rate limiting and execution."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class GitHubConfig(BaseModel):
    """Remote repository host settings."""

    api_url: str = Field(default="https://api.github.com", description="REST API base URL (GitHub Enterprise supported)")
    token: str | None = Field(default=None, description="Access token sent as a Bearer credential")
    user_agent: str = Field(default="script-orchestrator", description="User-Agent header for API requests")
    timeout_seconds: float = Field(default=30.0, description="Per-request network timeout")
    max_retries: int = Field(default=3, ge=0, description="Retries for transient errors")
    backoff_base_seconds: float = Field(default=0.5, ge=0.0, description="First retry delay, doubled per attempt")
    backoff_max_seconds: float = Field(default=8.0, ge=0.0, description="Upper bound for a single retry delay")
    script_extensions: list[str] = Field(
        default_factory=lambda: [".ps1", ".psm1"],
        description="File extensions treated as scripts during sync",
    )


class RateLimitConfig(BaseModel):
    """API quota settings."""

    safety_margin: int = Field(default=10, ge=0, description="Calls kept in reserve before reserve() blocks")
    default_ceiling: int = Field(default=5000, ge=1, description="Assumed hourly quota until the server reports one")


class WebhookConfig(BaseModel):
    """Webhook receiver settings."""

    secret: str | None = Field(default=None, description="Shared secret for HMAC signature validation")
    host: str = Field(default="0.0.0.0", description="Bind address for the webhook server")
    port: int = Field(default=9847, description="Port for the webhook server")
    path: str = Field(default="/webhook", description="Route receiving webhook deliveries")


class SyncConfig(BaseModel):
    """Repository synchronization settings."""

    poll_enabled: bool = Field(default=False, description="Enable polling for repos without webhooks")
    poll_interval_seconds: int = Field(default=3600, description="Polling interval in seconds (default: 1 hour)")
    store_path: Path | None = Field(
        default=None,
        description="JSON file backing the catalog store; in-memory only when unset",
    )


class ExecutionConfig(BaseModel):
    """Script execution limits and runtime invocation."""

    max_concurrent_executions: int = Field(default=50, ge=1, description="Admission ceiling")
    default_timeout_seconds: int = Field(default=300, ge=1, description="Timeout for entries without their own")
    max_timeout_seconds: int = Field(default=3600, ge=1, description="Hard upper bound for any timeout override")
    constrained_mode_default: bool = Field(default=True, description="Run in constrained language mode unless overridden")
    memory_budget_mb: int = Field(default=500, ge=1, description="Reported (not enforced) memory budget")
    block_high_risk: bool = Field(default=False, description="Treat high-risk scripts as validation errors")
    runtime_command: list[str] = Field(
        default_factory=lambda: ["pwsh", "-NoLogo", "-NoProfile", "-NonInteractive", "-File"],
        description="Command prefix; the script file path and parameters are appended",
    )
    version_command: list[str] = Field(
        default_factory=lambda: ["pwsh", "-NoProfile", "-Command", "$PSVersionTable.PSVersion.ToString()"],
        description="Command printing the runtime version",
    )
    constrained_prelude: str = Field(
        default="$ExecutionContext.SessionState.LanguageMode = 'ConstrainedLanguage'",
        description="Line prepended to the script when running in constrained mode",
    )
    script_suffix: str = Field(default=".ps1", description="Suffix for the temporary script file")


class OrchestratorConfig(BaseModel):
    """Top-level configuration."""

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


# Environment variable -> (section, field, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "GITHUB_TOKEN": ("github", "token", str),
    "ORCHESTRATOR_GITHUB_API_URL": ("github", "api_url", str),
    "ORCHESTRATOR_WEBHOOK_SECRET": ("webhook", "secret", str),
    "ORCHESTRATOR_WEBHOOK_PORT": ("webhook", "port", int),
    "ORCHESTRATOR_MAX_CONCURRENCY": ("execution", "max_concurrent_executions", int),
    "ORCHESTRATOR_DEFAULT_TIMEOUT": ("execution", "default_timeout_seconds", int),
    "ORCHESTRATOR_MAX_TIMEOUT": ("execution", "max_timeout_seconds", int),
    "ORCHESTRATOR_RATE_LIMIT_MARGIN": ("rate_limit", "safety_margin", int),
    "ORCHESTRATOR_STORE_PATH": ("sync", "store_path", Path),
}


def load_config(path: Path | None = None, environ: dict[str, str] | None = None) -> OrchestratorConfig:
    """Load configuration from an optional YAML file, then apply environment overrides.

    Args:
        path: YAML file with sections matching ``OrchestratorConfig`` fields.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated OrchestratorConfig.
    """
    data: dict[str, Any] = {}
    if path is not None and path.exists():
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)

    env = os.environ if environ is None else environ
    for var, (section, key, convert) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data.setdefault(section, {})[key] = convert(value)

    return OrchestratorConfig.model_validate(data)


# Default configuration
ORCHESTRATOR_CONFIG = OrchestratorConfig()
