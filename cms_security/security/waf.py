"""
Pattern based request inspection (WAF) for the CMS security pipeline.

Rules are compiled once, evaluated in a fixed order and every matching rule is
reported. The caller decides what to do with the matches: the request is
rejected when at least one matched rule carries the ``block`` action.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from ..observability.logging import get_logger
from ..observability.metrics import MetricsRegistry
from .exceptions import ScanLimitExceeded
from .models import RuleAction, Severity

SCAN_FIELDS = ("url", "query", "body", "user_agent", "referer")

MATCH_PREVIEW_LENGTH = 100

# Limits used when flattening a parsed body into scan text
_FLATTEN_MAX_DEPTH = 32


@dataclass(frozen=True)
class SecurityRule:
    """A named detection rule."""
    name: str
    pattern: Pattern
    severity: Severity
    action: RuleAction
    description: str = ""
    fields: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if self.fields:
            unknown = set(self.fields) - set(SCAN_FIELDS)
            if unknown:
                raise ValueError(f"Unknown scan fields for rule {self.name}: {sorted(unknown)}")

    def match(self, text: str) -> Optional[str]:
        """Return the matched substring, or None."""
        found = self.pattern.search(text)
        return found.group(0) if found else None


@dataclass(frozen=True)
class RuleMatch:
    """A rule that matched the scanned request."""
    rule: str
    severity: Severity
    action: RuleAction
    matched: str

    @property
    def blocks(self) -> bool:
        return self.action == RuleAction.BLOCK

    def to_dict(self) -> Dict[str, str]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "action": self.action.value,
            "matched": self.matched,
        }


def flatten_body(value: Any) -> str:
    """
    Flatten a parsed body into scan text.

    Mapping keys and string leaves are joined with spaces. Other scalars are
    skipped; they cannot carry a payload.
    """
    parts: List[str] = []
    seen = set()

    def walk(node: Any, depth: int):
        if depth > _FLATTEN_MAX_DEPTH:
            return
        if isinstance(node, str):
            parts.append(node)
        elif isinstance(node, dict):
            if id(node) in seen:
                return
            seen.add(id(node))
            for key, item in node.items():
                parts.append(str(key))
                walk(item, depth + 1)
        elif isinstance(node, (list, tuple)):
            if id(node) in seen:
                return
            seen.add(id(node))
            for item in node:
                walk(item, depth + 1)

    walk(value, 0)
    return " ".join(parts)


@dataclass
class ScanTarget:
    """The request fields seen by the rule set."""
    url: str = ""
    query: str = ""
    body: str = ""
    user_agent: str = ""
    referer: str = ""

    @classmethod
    def from_request(cls,
                     path: str,
                     query_pairs: Iterable[Tuple[str, str]] = (),
                     body: Any = None,
                     user_agent: Optional[str] = None,
                     referer: Optional[str] = None) -> "ScanTarget":
        """
        Build scan text from request parts.

        Query pairs are kept decoded as ``k=v`` separated by spaces so that
        payloads survive exactly as the handler will see them. A body that
        cannot be flattened is scanned as an empty string.
        """
        query = " ".join(f"{key}={value}" for key, value in query_pairs)

        if body is None:
            body_text = ""
        elif isinstance(body, (bytes, bytearray)):
            body_text = bytes(body).decode("utf-8", errors="replace")
        elif isinstance(body, str):
            body_text = body
        else:
            try:
                body_text = flatten_body(body)
            except Exception as e:
                get_logger("waf").warning("Request body could not be flattened for scanning", error=str(e))
                body_text = ""

        return cls(
            url=path or "",
            query=query,
            body=body_text,
            user_agent=user_agent or "",
            referer=referer or "",
        )

    def get(self, name: str) -> str:
        return getattr(self, name)

    @property
    def combined(self) -> str:
        return " ".join(self.get(name) for name in SCAN_FIELDS)


def _rule(name: str, pattern: str, severity: Severity, action: RuleAction,
          description: str, fields: Optional[Sequence[str]] = None) -> SecurityRule:
    return SecurityRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE | re.DOTALL),
        severity=severity,
        action=action,
        description=description,
        fields=tuple(fields) if fields else None,
    )


def default_rules() -> List[SecurityRule]:
    """The default CMS rule set, in evaluation order."""
    return [
        _rule(
            "sql_injection_union",
            r"\bunion\b.{0,256}?\bselect\b|\bselect\b.{0,256}?\bunion\b",
            Severity.CRITICAL, RuleAction.BLOCK,
            "UNION and SELECT keywords in the same request",
        ),
        _rule(
            "sql_injection_comment",
            r"/\*|\*/|--|#",
            Severity.MEDIUM, RuleAction.LOG,
            "SQL comment markers",
        ),
        _rule(
            "xss_script_tag",
            r"<\s{0,16}script\b[^>]{0,256}>?",
            Severity.HIGH, RuleAction.LOG,
            "Script tag",
        ),
        _rule(
            "xss_event_handler",
            r"\bon\w{1,32}\s{0,16}=\s{0,16}[\"'][^\"']{0,1024}[\"']",
            Severity.HIGH, RuleAction.LOG,
            "Inline event handler attribute",
        ),
        _rule(
            "xss_javascript_protocol",
            r"javascript\s{0,16}:",
            Severity.HIGH, RuleAction.LOG,
            "javascript: URI",
        ),
        _rule(
            "path_traversal",
            r"(?:\.\.[/\\]){2}",
            Severity.HIGH, RuleAction.BLOCK,
            "Repeated parent directory sequences",
        ),
        _rule(
            "command_injection",
            r"[;&|`$(){}\[\]]",
            Severity.MEDIUM, RuleAction.LOG,
            "Shell metacharacters",
        ),
        _rule(
            "scanner_user_agent",
            r"sqlmap|nmap|nikto|dirb|gobuster|masscan|nessus|burp|owasp",
            Severity.HIGH, RuleAction.BLOCK,
            "Known vulnerability scanner",
            fields=("user_agent",),
        ),
        _rule(
            "suspicious_path",
            r"/wp-admin|/phpmyadmin|\.php\b|/\.env\b",
            Severity.LOW, RuleAction.LOG,
            "Probe for software this CMS does not run",
            fields=("url",),
        ),
    ]


class PatternRuleSet:
    """Ordered, compiled set of WAF rules."""

    def __init__(self,
                 rules: Optional[Iterable[SecurityRule]] = None,
                 max_scan_length: int = 2_097_152,
                 metrics: Optional[MetricsRegistry] = None):
        self._rules: Tuple[SecurityRule, ...] = tuple(default_rules() if rules is None else rules)
        names = [rule.name for rule in self._rules]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate rule names: {sorted(duplicates)}")
        if max_scan_length <= 0:
            raise ValueError("max_scan_length must be positive")

        self.max_scan_length = max_scan_length
        self.metrics = metrics
        self.logger = get_logger("waf")

    @property
    def rules(self) -> Tuple[SecurityRule, ...]:
        return self._rules

    def scan(self, text: str) -> List[RuleMatch]:
        """
        Evaluate every rule over a single text blob.

        Raises:
            ScanLimitExceeded: The text is longer than ``max_scan_length``
        """
        text = text or ""
        self._check_length("text", text)
        return self._collect((rule, text) for rule in self._rules)

    def scan_target(self, target: ScanTarget) -> List[RuleMatch]:
        """
        Evaluate every rule over the request fields it applies to.

        Each field is checked against ``max_scan_length`` before any rule runs,
        so no part of the request is passed on unscanned.

        Raises:
            ScanLimitExceeded: A field is longer than ``max_scan_length``
        """
        for name in SCAN_FIELDS:
            self._check_length(name, target.get(name))
        combined = target.combined

        def texts():
            for rule in self._rules:
                if rule.fields:
                    yield rule, " ".join(target.get(name) for name in rule.fields)
                else:
                    yield rule, combined

        return self._collect(texts())

    def _check_length(self, field_name: str, text: str):
        if len(text) > self.max_scan_length:
            raise ScanLimitExceeded(field_name, len(text), self.max_scan_length)

    def _collect(self, pairs: Iterable[Tuple[SecurityRule, str]]) -> List[RuleMatch]:
        matches = []
        for rule, text in pairs:
            matched = rule.match(text)
            if matched is None:
                continue
            matches.append(RuleMatch(
                rule=rule.name,
                severity=rule.severity,
                action=rule.action,
                matched=matched[:MATCH_PREVIEW_LENGTH],
            ))
            if self.metrics:
                self.metrics.record_waf_match(rule.name, rule.action.value)

        if matches:
            self.logger.debug("WAF rules matched", rules=[m.rule for m in matches])
        return matches

    @staticmethod
    def blocking(matches: Iterable[RuleMatch]) -> bool:
        """Whether any match carries the block action."""
        return any(match.blocks for match in matches)
