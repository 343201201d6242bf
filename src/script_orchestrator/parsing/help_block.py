"""Comment-based help extraction.

Recognizes ``<# ... #>`` blocks and runs of ``#`` line comments that
contain help keywords such as ``.SYNOPSIS`` or ``.PARAMETER Name``.
A ``<#PSScriptInfo`` block is handled the same way, its keywords
usually carrying their value on the keyword line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_BLOCK_RE = re.compile(r"<#(.*?)(?:#>|\Z)", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"^[ \t]*#(?!requires\b)(.*)$", re.IGNORECASE)
_KEYWORD_RE = re.compile(r"^\s*\.([A-Za-z]+)(?:[ \t]+(.*?))?\s*$")

HELP_KEYWORDS = frozenset(
    {
        "SYNOPSIS",
        "DESCRIPTION",
        "PARAMETER",
        "EXAMPLE",
        "INPUTS",
        "OUTPUTS",
        "NOTES",
        "LINK",
        "COMPONENT",
        "ROLE",
        "FUNCTIONALITY",
        "AUTHOR",
        "VERSION",
        "TAGS",
        "GUID",
        "COMPANYNAME",
        "COPYRIGHT",
        "PROJECTURI",
        "LICENSEURI",
        "RELEASENOTES",
    }
)


@dataclass
class HelpSections:
    """Raw help sections, keyed by upper-cased keyword."""

    sections: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, str] = field(default_factory=dict)
    examples: list[str] = field(default_factory=list)

    def get(self, keyword: str) -> str:
        return self.sections.get(keyword, "")

    def merge(self, other: HelpSections) -> None:
        """Fold another block in; values already present win."""
        for key, value in other.sections.items():
            if value and not self.sections.get(key):
                self.sections[key] = value
        for name, text in other.parameters.items():
            if not self.parameters.get(name):
                self.parameters[name] = text
        self.examples.extend(other.examples)


def _candidate_blocks(text: str) -> list[tuple[int, str]]:
    """Comment blocks with their start offsets, in text order."""
    blocks = [(m.start(), m.group(1)) for m in _BLOCK_RE.finditer(text)]
    covered = [(m.start(), m.end()) for m in _BLOCK_RE.finditer(text)]

    run: list[str] = []
    run_start = 0
    offset = 0
    for line in text.splitlines(keepends=True):
        inside_block = any(start <= offset < end for start, end in covered)
        match = None if inside_block else _LINE_COMMENT_RE.match(line.rstrip("\r\n"))
        if match:
            if not run:
                run_start = offset
            run.append(match.group(1))
        elif run:
            blocks.append((run_start, "\n".join(run)))
            run = []
        offset += len(line)
    if run:
        blocks.append((run_start, "\n".join(run)))

    blocks.sort(key=lambda b: b[0])
    return blocks


def _clean(lines: list[str]) -> str:
    return "\n".join(line.strip() for line in lines).strip()


def parse_block(block: str) -> HelpSections | None:
    """Split one comment block into help sections; None if it has none."""
    result = HelpSections()
    keyword: str | None = None
    argument = ""
    body: list[str] = []
    found = False

    def flush() -> None:
        if keyword is None:
            return
        text = _clean(body)
        if keyword == "PARAMETER":
            if argument:
                result.parameters.setdefault(argument, text)
        elif keyword == "EXAMPLE":
            if text:
                result.examples.append(text)
        elif text and not result.sections.get(keyword):
            result.sections[keyword] = text

    for line in block.splitlines():
        if line.strip().upper() == "PSSCRIPTINFO":
            continue
        match = _KEYWORD_RE.match(line)
        if match and match.group(1).upper() in HELP_KEYWORDS:
            flush()
            found = True
            keyword = match.group(1).upper()
            argument = (match.group(2) or "").strip()
            # PSScriptInfo style puts the value on the keyword line
            body = [] if keyword == "PARAMETER" or not argument else [argument]
        elif keyword is not None:
            body.append(line)
    flush()
    return result if found else None


def extract_help(text: str) -> HelpSections:
    """Merge every help-bearing comment block in the script."""
    merged = HelpSections()
    for _, block in _candidate_blocks(text):
        sections = parse_block(block)
        if sections is not None:
            merged.merge(sections)
    return merged
