"""Catalog domain models: repository bindings, tracked files and catalog entries."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePosixPath

from pydantic import BaseModel, Field

from script_orchestrator.entities.analysis import (
    ModuleDependency,
    RuntimeVersion,
    ScriptMetadata,
    SecurityAnalysis,
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RepositoryStatus(StrEnum):
    """Lifecycle status of a repository binding."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class RepositoryBinding(BaseModel):
    """A tracked link to one remote script repository and branch."""

    id: str = Field(description="Lower-cased ``owner/name``")
    owner: str
    name: str
    default_branch: str = "main"
    description: str = ""
    is_private: bool = False
    status: RepositoryStatus = RepositoryStatus.ACTIVE
    last_sync_at: datetime | None = None
    last_commit_sha: str | None = Field(default=None, description="Branch head seen by the last poll")
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def is_active(self) -> bool:
        return self.status == RepositoryStatus.ACTIVE

    @staticmethod
    def make_id(owner: str, name: str) -> str:
        """Produce the binding ID for a repository."""
        return f"{owner.strip()}/{name.strip()}".lower()

    @classmethod
    def create(cls, owner: str, name: str, default_branch: str = "main", **kwargs: object) -> RepositoryBinding:
        return cls(id=cls.make_id(owner, name), owner=owner, name=name, default_branch=default_branch, **kwargs)


class RepositoryFile(BaseModel):
    """A script file tracked in a repository binding, unique per (binding, path, branch)."""

    binding_id: str
    path: str
    branch: str
    sha: str = Field(description="Remote content hash at last sync")
    catalog_entry_id: str
    metadata: ScriptMetadata = Field(default_factory=ScriptMetadata)
    security: SecurityAnalysis = Field(default_factory=SecurityAnalysis)
    last_modified: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.binding_id, self.path, self.branch)


class CatalogEntry(BaseModel):
    """A registered, executable script version."""

    id: str
    name: str
    version: int = Field(default=1, ge=1, description="Revision; bumped on every content change")
    declared_version: str = ""
    content: str
    content_hash: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    timeout_seconds: int | None = Field(default=None, description="Per-entry timeout; engine default when unset")
    required_version: RuntimeVersion | None = None
    security: SecurityAnalysis = Field(default_factory=SecurityAnalysis)
    metadata: ScriptMetadata = Field(default_factory=ScriptMetadata)
    dependencies: list[ModuleDependency] = Field(default_factory=list)
    source_binding_id: str | None = None
    source_path: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def model_post_init(self, __context: object) -> None:
        if not self.content_hash:
            self.content_hash = self.compute_hash(self.content)

    @staticmethod
    def compute_hash(content: str) -> str:
        """Compute SHA256 hash of content."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_id(binding_id: str, branch: str, path: str) -> str:
        """Produce a deterministic ID string from source location."""
        return f"{binding_id}/{branch}/{path.lstrip('/')}"

    @staticmethod
    def name_from_path(path: str) -> str:
        return PurePosixPath(path).stem
