"""Module dependency and runtime version requirements."""

from __future__ import annotations

import re

from script_orchestrator.entities.analysis import ModuleDependency, RuntimeVersion
from script_orchestrator.parsing.lexer import mask_block_comments, top_level_split

_REQUIRES_MODULES_RE = re.compile(
    r"^[ \t]*#Requires[ \t]+(?:.*?[ \t])?-Modules?[ \t]+(.+?)(?=[ \t]+-[A-Za-z]+\b|[ \t]*$)",
    re.IGNORECASE | re.MULTILINE,
)
_REQUIRES_VERSION_RE = re.compile(
    r"^[ \t]*#Requires[ \t]+(?:.*?[ \t])?-Version[ \t]+(\d+(?:\.\d+){0,3})\b",
    re.IGNORECASE | re.MULTILINE,
)
_IMPORT_MODULE_RE = re.compile(
    r"(?<![\w-])Import-Module[ \t]+(?:-Name[ \t]+)?[\"']?([^\"'\s,;)|]+)[\"']?([^\r\n;|]*)",
    re.IGNORECASE,
)
_IMPORT_VERSION_RE = re.compile(
    r"-(?:RequiredVersion|MinimumVersion)[ \t]+[\"']?([\d.]+)",
    re.IGNORECASE,
)
_USING_MODULE_RE = re.compile(
    r"^[ \t]*using[ \t]+module[ \t]+[\"']?([^\"'\s;]+)[\"']?",
    re.IGNORECASE | re.MULTILINE,
)
_HASHTABLE_PAIR_RE = re.compile(r"(\w+)\s*=\s*[\"']?([^\"';\r\n}]+?)[\"']?\s*(?:;|\r?\n|$)")


def _module_spec(spec: str) -> ModuleDependency | None:
    """Parse ``@{ModuleName='X'; ModuleVersion='1.0'}`` or a plain name."""
    spec = spec.strip().strip("\"'")
    if not spec:
        return None
    if not spec.startswith("@{"):
        return ModuleDependency(name=spec)

    body = spec[2:].rstrip("}")
    pairs = {key.lower(): value.strip() for key, value in _HASHTABLE_PAIR_RE.findall(body)}
    name = pairs.get("modulename")
    if not name:
        return None
    version = pairs.get("requiredversion") or pairs.get("moduleversion")
    return ModuleDependency(name=name, version=version or None)


def _is_line_comment(text: str, offset: int) -> bool:
    line_start = text.rfind("\n", 0, offset) + 1
    return "#" in text[line_start:offset]


def extract_dependencies(content: str) -> list[ModuleDependency]:
    """Collect required and imported modules in order of first appearance.

    Sources are ``#Requires -Modules``, ``Import-Module`` and
    ``using module`` statements. Duplicates are dropped case-insensitively
    by (name, version).
    """
    if not content:
        return []

    found: list[tuple[int, ModuleDependency]] = []

    for match in _REQUIRES_MODULES_RE.finditer(content):
        for spec in top_level_split(match.group(1)):
            dependency = _module_spec(spec)
            if dependency is not None:
                found.append((match.start(), dependency))

    # Help examples commonly show Import-Module; ignore comment text
    code = mask_block_comments(content)
    for match in _IMPORT_MODULE_RE.finditer(code):
        name = match.group(1)
        if name.startswith(("-", "$")) or _is_line_comment(code, match.start()):
            continue
        version_match = _IMPORT_VERSION_RE.search(match.group(2))
        found.append(
            (match.start(), ModuleDependency(name=name, version=version_match.group(1) if version_match else None))
        )

    for match in _USING_MODULE_RE.finditer(code):
        found.append((match.start(), ModuleDependency(name=match.group(1))))

    found.sort(key=lambda item: item[0])
    seen: set[tuple[str, str | None]] = set()
    dependencies: list[ModuleDependency] = []
    for _, dependency in found:
        key = (dependency.name.lower(), dependency.version)
        if key not in seen:
            seen.add(key)
            dependencies.append(dependency)
    return dependencies


def extract_required_version(content: str) -> RuntimeVersion | None:
    """Minimum runtime version from ``#Requires -Version``; None when undeclared.

    When several are declared the highest wins.
    """
    if not content:
        return None
    versions = [
        v for v in (RuntimeVersion.parse(m.group(1)) for m in _REQUIRES_VERSION_RE.finditer(content)) if v is not None
    ]
    if not versions:
        return None
    return max(versions, key=RuntimeVersion.as_tuple)
