"""Script parser: metadata, dependencies, runtime requirement and risk in one pass.

Parsing is pure and never raises. Malformed input produces diagnostics
alongside whatever metadata could still be recovered.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from script_orchestrator.entities.analysis import ParsedScript, ScriptMetadata
from script_orchestrator.parsing.help_block import HelpSections, extract_help
from script_orchestrator.parsing.lexer import (
    check_balance,
    matching_close,
    strip_comments_and_strings,
    top_level_split,
    top_level_text,
)
from script_orchestrator.parsing.requirements import extract_dependencies, extract_required_version
from script_orchestrator.security.scanner import SecurityScanner

logger = logging.getLogger(__name__)

_PARAM_BLOCK_RE = re.compile(r"(?<![\w-])param\s*\(", re.IGNORECASE)
_FUNCTION_RE = re.compile(
    r"^[ \t]*(?:function|filter|workflow)[ \t]+(?:(?:global|script|local|private):)?([\w-]+)",
    re.IGNORECASE | re.MULTILINE,
)
_VARIABLE_RE = re.compile(r"\$([A-Za-z_][\w]*)")
_AUTOMATIC_VARIABLES = frozenset({"true", "false", "null"})


def _split_tags(raw: str) -> list[str]:
    tags: list[str] = []
    for tag in re.split(r"[\s,;]+", raw):
        if tag and tag.lower() not in {t.lower() for t in tags}:
            tags.append(tag)
    return tags


def _one_line(text: str) -> str:
    return " ".join(text.split())


def _script_parameters(code: str) -> list[str]:
    """Names declared in the script-level ``param(...)`` block.

    Only a param block at brace depth zero counts; function param blocks
    are skipped.
    """
    for match in _PARAM_BLOCK_RE.finditer(code):
        if code[: match.start()].count("{") != code[: match.start()].count("}"):
            continue
        open_index = match.end() - 1
        close_index = matching_close(code, open_index)
        body = code[open_index + 1 : close_index if close_index != -1 else len(code)]
        names: list[str] = []
        for declaration in top_level_split(body):
            # Attributes and type constraints sit inside brackets
            for variable in _VARIABLE_RE.findall(top_level_text(declaration)):
                if variable.lower() not in _AUTOMATIC_VARIABLES:
                    names.append(variable)
                    break
        return names
    return []


def _functions(code: str) -> list[str]:
    names: list[str] = []
    for name in _FUNCTION_RE.findall(code):
        if name not in names:
            names.append(name)
    return names


def _build_metadata(help_sections: HelpSections, parameter_names: list[str], functions: list[str]) -> ScriptMetadata:
    parameters: dict[str, str] = {}
    for name in parameter_names:
        help_text = next(
            (text for key, text in help_sections.parameters.items() if key.lower() == name.lower()),
            "",
        )
        parameters[name] = help_text
    for name, text in help_sections.parameters.items():
        if name.lower() not in {p.lower() for p in parameters}:
            parameters[name] = text

    return ScriptMetadata(
        synopsis=_one_line(help_sections.get("SYNOPSIS")),
        description=help_sections.get("DESCRIPTION"),
        notes=help_sections.get("NOTES"),
        author=_one_line(help_sections.get("AUTHOR")),
        version=_one_line(help_sections.get("VERSION")),
        tags=_split_tags(help_sections.get("TAGS")),
        parameters=parameters,
        examples=list(help_sections.examples),
        functions=functions,
    )


@dataclass
class ScriptParser:
    """Derives a ParsedScript from script text.

    Usage:
        parser = ScriptParser()
        parsed = parser.parse(content, "Deploy-App.ps1")
        parsed.metadata.synopsis, parsed.security.risk_level
    """

    scanner: SecurityScanner = field(default_factory=SecurityScanner)

    @staticmethod
    def _decode(content: str | bytes | None, diagnostics: list[str]) -> str:
        if content is None:
            diagnostics.append("No content")
            return ""
        if isinstance(content, bytes):
            try:
                return content.decode("utf-8-sig")
            except UnicodeDecodeError as e:
                diagnostics.append(f"Content is not valid UTF-8 ({e.reason} at byte {e.start})")
                return content.decode("utf-8", errors="replace")
        return content.removeprefix("\ufeff")

    def parse(self, content: str | bytes | None, filename: str = "") -> ParsedScript:
        """Parse script text.

        Args:
            content: Script text (bytes are decoded as UTF-8).
            filename: Name used for diagnostics and logging.

        Returns:
            ParsedScript with best-effort metadata and any diagnostics.
        """
        diagnostics: list[str] = []
        text = self._decode(content, diagnostics)
        result = ParsedScript(filename=filename)

        try:
            code, lexical = strip_comments_and_strings(text)
            diagnostics.extend(lexical)
            diagnostics.extend(check_balance(code))

            result.metadata = _build_metadata(extract_help(text), _script_parameters(code), _functions(code))
            result.dependencies = extract_dependencies(text)
            result.required_version = extract_required_version(text)
            result.security = self.scanner.scan(text, source=filename)
        except Exception as e:  # parse must return a result for any input
            logger.exception("Unexpected error parsing %s", filename or "<content>")
            diagnostics.append(f"Parser error: {e}")

        for diagnostic in diagnostics:
            logger.warning("Malformed script %s: %s", filename or "<content>", diagnostic)
        result.diagnostics = diagnostics
        return result


_DEFAULT_PARSER = ScriptParser()


def parse_script(content: str | bytes | None, filename: str = "") -> ParsedScript:
    """Parse with a default ScriptParser."""
    return _DEFAULT_PARSER.parse(content, filename)
