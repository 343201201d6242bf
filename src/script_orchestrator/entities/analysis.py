"""Value objects produced by script parsing and security screening."""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

_VERSION_RE = re.compile(r"^\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:\.(\d+))?\s*$")


class RiskLevel(StrEnum):
    """Risk classification for a script."""

    LOW = "low"  # No high-risk construct found
    HIGH = "high"  # At least one high-risk construct found


class SecurityFinding(BaseModel):
    """A single high-risk construct found in script text."""

    pattern_name: str
    category: str  # dynamic_evaluation, destructive_filesystem, elevated_process, ...
    description: str
    matched_text: str = ""  # The actual text that matched (truncated)
    line_number: int | None = None


class SecurityAnalysis(BaseModel):
    """Security classification of a script."""

    risk_level: RiskLevel = RiskLevel.LOW
    requires_elevation: bool = False
    findings: list[SecurityFinding] = Field(default_factory=list)

    @property
    def is_high_risk(self) -> bool:
        """Check if any high-risk construct was found."""
        return self.risk_level == RiskLevel.HIGH

    @property
    def issues(self) -> list[str]:
        """Human-readable description of each finding."""
        return [
            f"{f.description} (line {f.line_number}): {f.matched_text}" if f.line_number else f.description
            for f in self.findings
        ]


class RuntimeVersion(BaseModel):
    """A dotted runtime version such as ``7.2`` or ``5.1.0.0``."""

    model_config = ConfigDict(frozen=True)

    major: int
    minor: int = 0
    build: int = 0
    revision: int = 0

    @classmethod
    def parse(cls, text: str | None) -> RuntimeVersion | None:
        """Parse ``X[.Y[.Z[.W]]]``; returns None for anything else."""
        if not text:
            return None
        match = _VERSION_RE.match(text)
        if not match:
            return None
        parts = [int(p) if p is not None else 0 for p in match.groups()]
        return cls(major=parts[0], minor=parts[1], build=parts[2], revision=parts[3])

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.major, self.minor, self.build, self.revision)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}"
        if self.build or self.revision:
            text += f".{self.build}"
        if self.revision:
            text += f".{self.revision}"
        return text


class ModuleDependency(BaseModel):
    """A module the script declares or imports."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


class ScriptMetadata(BaseModel):
    """Metadata extracted from a script's comment-based help."""

    synopsis: str = ""
    description: str = ""
    notes: str = ""
    author: str = ""
    version: str = ""
    tags: list[str] = Field(default_factory=list)
    parameters: dict[str, str] = Field(default_factory=dict)  # name -> help text
    examples: list[str] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)


class ParsedScript(BaseModel):
    """Everything the parser derives from one script."""

    filename: str = ""
    metadata: ScriptMetadata = Field(default_factory=ScriptMetadata)
    dependencies: list[ModuleDependency] = Field(default_factory=list)
    required_version: RuntimeVersion | None = None
    security: SecurityAnalysis = Field(default_factory=SecurityAnalysis)
    diagnostics: list[str] = Field(default_factory=list)

    @property
    def is_well_formed(self) -> bool:
        return not self.diagnostics
