"""Static screening of script text for high-risk constructs.

The pattern set is a conservative allow/deny-list heuristic with no
taint tracking. Comments and string literals are scanned like code, so
a script that merely mentions a dangerous cmdlet is still flagged.
False positives are accepted; a missed construct is the failure to avoid.

Categories:
- Dynamic code evaluation
- Destructive filesystem operations
- Elevated or remote process spawning
- Disabling safety checks
- Remote code download
- Hardcoded credentials
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from pydantic import BaseModel

from script_orchestrator.entities.analysis import RiskLevel, SecurityAnalysis, SecurityFinding

logger = logging.getLogger(__name__)


class ThreatPattern(BaseModel):
    """A high-risk construct detection pattern."""

    name: str
    category: str
    pattern: str  # Regex pattern, matched case-insensitively
    description: str


THREAT_PATTERNS: list[ThreatPattern] = [
    # Dynamic code evaluation
    ThreatPattern(
        name="invoke_expression",
        category="dynamic_evaluation",
        pattern=r"\bInvoke-Expression\b|(?<![\w-])iex\b",
        description="Evaluates a string as code",
    ),
    ThreatPattern(
        name="scriptblock_create",
        category="dynamic_evaluation",
        pattern=r"\[(System\.Management\.Automation\.)?ScriptBlock\]::Create\s*\(",
        description="Builds a script block from a string",
    ),
    ThreatPattern(
        name="add_type",
        category="dynamic_evaluation",
        pattern=r"\bAdd-Type\b",
        description="Compiles and loads inline code",
    ),
    ThreatPattern(
        name="invoke_script",
        category="dynamic_evaluation",
        pattern=r"\.InvokeScript\s*\(",
        description="Invokes script text through the session API",
    ),
    # Destructive filesystem operations
    ThreatPattern(
        name="remove_item",
        category="destructive_filesystem",
        pattern=r"\bRemove-Item\b",
        description="Deletes files or registry keys",
    ),
    ThreatPattern(
        name="rm_recursive",
        category="destructive_filesystem",
        pattern=r"(?<![\w-])(rm|del|rd|rmdir)\s+-(rf?|r\s+-f|recurse)\b",
        description="Recursive delete",
    ),
    ThreatPattern(
        name="disk_format",
        category="destructive_filesystem",
        pattern=r"\b(Format-Volume|Clear-Disk|Remove-Partition|Initialize-Disk)\b",
        description="Formats or wipes a disk",
    ),
    # Elevated or remote process spawning
    ThreatPattern(
        name="start_process",
        category="elevated_process",
        pattern=r"\bStart-Process\b",
        description="Spawns a process (possibly elevated with -Verb RunAs)",
    ),
    ThreatPattern(
        name="invoke_command",
        category="elevated_process",
        pattern=r"\bInvoke-Command\b",
        description="Runs commands in another session or on a remote host",
    ),
    ThreatPattern(
        name="service_control",
        category="elevated_process",
        pattern=r"\b(New|Stop|Start|Restart|Set|Remove)-Service\b",
        description="Changes the state or configuration of a system service",
    ),
    ThreatPattern(
        name="windows_feature",
        category="elevated_process",
        pattern=r"\b(Install-WindowsFeature|Enable-WindowsOptionalFeature)\b",
        description="Installs operating system features",
    ),
    ThreatPattern(
        name="sudo",
        category="elevated_process",
        pattern=r"(?<![\w-])sudo\s+\S",
        description="Runs a command as superuser",
    ),
    # Disabling safety checks
    ThreatPattern(
        name="set_execution_policy",
        category="disabling_safety",
        pattern=r"\bSet-ExecutionPolicy\b|-ExecutionPolicy\s+(Bypass|Unrestricted)\b",
        description="Relaxes the script execution policy",
    ),
    ThreatPattern(
        name="defender_disable",
        category="disabling_safety",
        pattern=r"\bSet-MpPreference\b[^\r\n]*-Disable\w*",
        description="Disables antivirus protection",
    ),
    ThreatPattern(
        name="certificate_bypass",
        category="disabling_safety",
        pattern=r"ServerCertificateValidationCallback|-SkipCertificateCheck\b",
        description="Disables TLS certificate validation",
    ),
    # Remote code download
    ThreatPattern(
        name="webclient_download",
        category="remote_code",
        pattern=r"\bNet\.WebClient\b|\.Download(String|File|Data)\s*\(",
        description="Downloads remote content",
    ),
    ThreatPattern(
        name="web_request",
        category="remote_code",
        pattern=r"\b(Invoke-WebRequest|Invoke-RestMethod|iwr|irm)\b",
        description="Fetches remote content over HTTP",
    ),
    # Hardcoded credentials
    ThreatPattern(
        name="hardcoded_password",
        category="hardcoded_credential",
        pattern=r"\$?\b\w*(password|passwd|pwd)\w*\s*=\s*[\"'][^\"'\s$]+[\"']",
        description="Password assigned from a string literal",
    ),
    ThreatPattern(
        name="hardcoded_secret",
        category="hardcoded_credential",
        pattern=r"\$?\b\w*(secret|token|apikey|api_key)\w*\s*=\s*[\"'][^\"'\s$]{6,}[\"']",
        description="Secret or token assigned from a string literal",
    ),
    ThreatPattern(
        name="plaintext_securestring",
        category="hardcoded_credential",
        pattern=r"ConvertTo-SecureString\s+[\"'][^\"']+[\"']\s+-AsPlainText",
        description="Secure string built from a plaintext literal",
    ),
]


@dataclass
class SecurityScanner:
    """Scanner for high-risk constructs in script content.

    Usage:
        scanner = SecurityScanner()
        analysis = scanner.scan(content)
        if analysis.is_high_risk:
            ...
    """

    patterns: list[ThreatPattern] = field(default_factory=lambda: THREAT_PATTERNS.copy())
    max_match_length: int = 100

    def __post_init__(self) -> None:
        self._compiled: list[tuple[ThreatPattern, re.Pattern[str]]] = []
        for pattern in self.patterns:
            try:
                self._compiled.append((pattern, re.compile(pattern.pattern, re.IGNORECASE | re.MULTILINE)))
            except re.error as e:
                logger.warning("Invalid regex pattern %s: %s", pattern.name, e)

    def scan(self, content: str | None, source: str = "") -> SecurityAnalysis:
        """Scan content for high-risk constructs.

        Args:
            content: Raw script text.
            source: Label used in log messages (usually the filename).

        Returns:
            HIGH risk with elevation required if anything matched, else LOW.
        """
        if not content:
            return SecurityAnalysis()

        findings: list[SecurityFinding] = []
        for pattern, regex in self._compiled:
            for match in regex.finditer(content):
                findings.append(
                    SecurityFinding(
                        pattern_name=pattern.name,
                        category=pattern.category,
                        description=pattern.description,
                        matched_text=match.group(0)[: self.max_match_length],
                        line_number=content.count("\n", 0, match.start()) + 1,
                    )
                )

        if not findings:
            return SecurityAnalysis()

        findings.sort(key=lambda f: (f.line_number or 0, f.pattern_name))
        logger.info(
            "Security scan %s: %d findings in %s",
            source or "<content>",
            len(findings),
            sorted({f.category for f in findings}),
        )
        return SecurityAnalysis(risk_level=RiskLevel.HIGH, requires_elevation=True, findings=findings)


def classify(content: str | None) -> SecurityAnalysis:
    """Scan with the default pattern set."""
    return _DEFAULT_SCANNER.scan(content)


_DEFAULT_SCANNER = SecurityScanner()
