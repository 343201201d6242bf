"""Security screening of script content."""

from script_orchestrator.security.scanner import THREAT_PATTERNS, SecurityScanner, ThreatPattern, classify

__all__ = [
    "THREAT_PATTERNS",
    "SecurityScanner",
    "ThreatPattern",
    "classify",
]
