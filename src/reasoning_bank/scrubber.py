"""Secret detection and redaction for memory content.

Content is scrubbed before it is persisted and again on every search result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from reasoning_bank.logging import get_logger

log = get_logger("scrubber")


@dataclass(frozen=True)
class Rule:
    """A secret detection rule."""

    id: str
    description: str
    pattern: re.Pattern
    severity: str = "high"


@dataclass(frozen=True)
class Finding:
    """A secret found by a rule, with its span in the text that rule scanned."""

    rule_id: str
    description: str
    severity: str
    start: int
    end: int


@dataclass
class ScrubResult:
    """Scrubbed text plus what was redacted."""

    scrubbed: str
    findings: list[Finding] = field(default_factory=list)

    @property
    def has_findings(self) -> bool:
        return bool(self.findings)


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(
        id="private-key",
        description="Private key block",
        pattern=re.compile(
            r"-----BEGIN (?:RSA |DSA |EC |OPENSSH |PGP )?PRIVATE KEY(?: BLOCK)?-----"
            r"[\s\S]*?-----END (?:RSA |DSA |EC |OPENSSH |PGP )?PRIVATE KEY(?: BLOCK)?-----"
        ),
        severity="critical",
    ),
    Rule(
        id="aws-access-key-id",
        description="AWS access key ID",
        pattern=re.compile(r"\b(?:A3T[A-Z0-9]|AKIA|AGPA|AIDA|AROA|AIPA|ANPA|ANVA|ASIA)[A-Z0-9]{16}\b"),
        severity="critical",
    ),
    Rule(
        id="aws-secret-access-key",
        description="AWS secret access key assignment",
        pattern=re.compile(
            r"(?i)(?:aws_secret_access_key|aws_secret_key|secret_access_key)\s*[:=]\s*['\"]?"
            r"[A-Za-z0-9/+=]{40}['\"]?"
        ),
        severity="critical",
    ),
    Rule(
        id="github-token",
        description="GitHub token",
        pattern=re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36}\b"),
    ),
    Rule(
        id="github-fine-grained",
        description="GitHub fine-grained personal access token",
        pattern=re.compile(r"\bgithub_pat_[A-Za-z0-9_]{22,}\b"),
    ),
    Rule(
        id="gitlab-token",
        description="GitLab personal access token",
        pattern=re.compile(r"\bglpat-[A-Za-z0-9\-]{20,}"),
    ),
    Rule(
        id="slack-token",
        description="Slack token",
        pattern=re.compile(r"\bxox[abposr]-[A-Za-z0-9\-]{10,}"),
    ),
    Rule(
        id="anthropic-api-key",
        description="Anthropic API key",
        pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{20,}"),
    ),
    Rule(
        id="openai-api-key",
        description="OpenAI API key",
        pattern=re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9]{20,}"),
    ),
    Rule(
        id="jwt",
        description="JSON Web Token",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_\-]{8,}\.eyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}"),
    ),
    Rule(
        id="bearer-token",
        description="Bearer token",
        pattern=re.compile(r"Bearer\s+[A-Za-z0-9_\-\.=]{20,}"),
    ),
    Rule(
        id="generic-api-key",
        description="Generic API key assignment",
        pattern=re.compile(r"(?i)(?:api[_-]?key|apikey)\s*[:=]\s*['\"]?[A-Za-z0-9_\-]{16,64}['\"]?"),
    ),
    Rule(
        id="generic-secret",
        description="Password or secret assignment",
        pattern=re.compile(r"(?i)(?:secret|password|passwd|pwd)\s*[:=]\s*['\"]?[^\s'\"]{8,}['\"]?"),
    ),
    Rule(
        id="connection-string",
        description="Credentials embedded in a connection URL",
        pattern=re.compile(r"(?i)\b[a-z][a-z0-9+\-.]*://[^\s:/@]+:[^\s@/]+@[^\s]+"),
    ),
)


def redaction_marker(rule_id: str) -> str:
    return f"[REDACTED:{rule_id}]"


class Scrubber:
    """Regex-based secret scrubber.

    Rules run in order; each rule sees the output of the previous one, so
    overlapping matches are redacted once by the earliest rule.
    """

    def __init__(self, rules: tuple[Rule, ...] | list[Rule] = DEFAULT_RULES, enabled: bool = True):
        self.rules = tuple(rules)
        self.enabled = enabled

    def scrub(self, text: str) -> ScrubResult:
        """Redact every secret found in text."""
        if not self.enabled or not text:
            return ScrubResult(scrubbed=text or "")

        findings: list[Finding] = []
        scrubbed = text
        for rule in self.rules:
            matches = list(rule.pattern.finditer(scrubbed))
            if not matches:
                continue
            findings.extend(
                Finding(
                    rule_id=rule.id,
                    description=rule.description,
                    severity=rule.severity,
                    start=m.start(),
                    end=m.end(),
                )
                for m in matches
            )
            scrubbed = rule.pattern.sub(redaction_marker(rule.id), scrubbed)

        if findings:
            log.warning(
                "Redacted {} secret(s): {}",
                len(findings),
                ", ".join(sorted({f.rule_id for f in findings})),
            )
        return ScrubResult(scrubbed=scrubbed, findings=findings)
