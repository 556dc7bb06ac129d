"""
Input sanitization for the CMS security pipeline.

Strings lose script blocks, ``javascript:`` URIs and inline event handler
assignments. Mapping keys that could reach object internals are dropped
together with their values.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Pattern, Set, Tuple

from ..observability.logging import get_logger, SecurityLogger

# Marker for a branch that must be removed from its parent
_DROP = object()


@dataclass
class SanitizationConfig:
    """Configuration for input sanitization."""
    max_depth: int = 32
    max_passes: int = 8
    blocked_key_prefix: str = "__"
    blocked_key_substrings: Tuple[str, ...] = ("prototype",)


class InputSanitizer:
    """Deep sanitizer for parsed request data."""

    SCRIPT_OPEN = re.compile(r"<script\b", re.IGNORECASE)
    SCRIPT_CLOSE = re.compile(r"</script>", re.IGNORECASE)
    # Unbalanced opening or closing script tags left behind
    SCRIPT_TAG = re.compile(r"<\s*/?\s*script[^>]*>?", re.IGNORECASE)
    JAVASCRIPT_URI = re.compile(r"javascript\s*:", re.IGNORECASE)
    EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)

    def __init__(self, config: Optional[SanitizationConfig] = None):
        self.config = config or SanitizationConfig()
        self.logger = get_logger("input_sanitizer")
        self.security_logger = SecurityLogger("input_sanitizer")
        self._string_patterns: List[Pattern] = [
            self.SCRIPT_TAG,
            self.JAVASCRIPT_URI,
            self.EVENT_HANDLER,
        ]

    def strip_script_blocks(self, value: str) -> str:
        """
        Remove ``<script ...>...</script>`` blocks, each ending at the first
        close tag after it.
        """
        parts = []
        pos = 0
        while True:
            opening = self.SCRIPT_OPEN.search(value, pos)
            if not opening:
                break
            closing = self.SCRIPT_CLOSE.search(value, opening.end())
            if not closing:
                break
            parts.append(value[pos:opening.start()])
            pos = closing.end()
        parts.append(value[pos:])
        return "".join(parts)

    def sanitize_string(self, value: str) -> str:
        """
        Sanitize a single string.

        Substitutions are repeated until nothing changes, so fragments that
        only form a pattern after a removal (``<scr<script>ipt>``) are removed
        too. A string that does not settle within ``max_passes`` is replaced
        by an empty string.
        """
        current = value
        for _ in range(self.config.max_passes):
            cleaned = self.strip_script_blocks(current)
            for pattern in self._string_patterns:
                cleaned = pattern.sub("", cleaned)
            cleaned = cleaned.strip()
            if cleaned == current:
                return cleaned
            current = cleaned

        self.security_logger.log_input_validation_failure(
            "string", "unstable_sanitization", length=len(value)
        )
        return ""

    def is_blocked_key(self, key: Any) -> bool:
        """Whether a mapping key is dropped along with its value."""
        text = str(key)
        if text.startswith(self.config.blocked_key_prefix):
            return True
        lowered = text.lower()
        return any(blocked in lowered for blocked in self.config.blocked_key_substrings)

    def sanitize(self, value: Any) -> Any:
        """
        Sanitize a JSON-like value.

        Args:
            value: Parsed body, query or path parameters

        Returns:
            A sanitized copy of the same shape. Branches nested deeper than
            ``max_depth`` or that refer back to an enclosing container are
            dropped. A value that is itself dropped becomes None.
        """
        result = self._sanitize(value, depth=0, ancestors=set())
        return None if result is _DROP else result

    def sanitize_pairs(self, pairs: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
        """Sanitize ordered key/value pairs such as a query string."""
        sanitized = []
        for key, value in pairs:
            if self.is_blocked_key(key):
                self._log_blocked_key(key)
                continue
            sanitized.append((key, self.sanitize_string(value)))
        return sanitized

    def _sanitize(self, value: Any, depth: int, ancestors: Set[int]) -> Any:
        if isinstance(value, str):
            return self.sanitize_string(value)

        if not isinstance(value, (dict, list, tuple)):
            return value

        if depth >= self.config.max_depth:
            self.security_logger.log_input_validation_failure(
                "json_depth", "excessive_nesting", max_depth=self.config.max_depth
            )
            return _DROP

        marker = id(value)
        if marker in ancestors:
            self.security_logger.log_input_validation_failure("json_cycle", "cyclic_reference")
            return _DROP

        ancestors.add(marker)
        try:
            if isinstance(value, dict):
                sanitized = {}
                for key, item in value.items():
                    if self.is_blocked_key(key):
                        self._log_blocked_key(key)
                        continue
                    cleaned = self._sanitize(item, depth + 1, ancestors)
                    if cleaned is not _DROP:
                        sanitized[key] = cleaned
                return sanitized

            items = [self._sanitize(item, depth + 1, ancestors) for item in value]
            items = [item for item in items if item is not _DROP]
            return tuple(items) if isinstance(value, tuple) else items
        finally:
            ancestors.discard(marker)

    def _log_blocked_key(self, key: Any):
        self.security_logger.log_input_validation_failure(
            "object_key", "blocked_key", field_name=str(key)[:64]
        )
