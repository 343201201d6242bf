"""Script parsing: comment-based help, requirements and security screening."""

from script_orchestrator.parsing.parser import ScriptParser, parse_script
from script_orchestrator.parsing.requirements import extract_dependencies, extract_required_version

__all__ = [
    "ScriptParser",
    "extract_dependencies",
    "extract_required_version",
    "parse_script",
]
