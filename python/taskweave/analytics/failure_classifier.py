"""Failure classification for recovery decisions.

Typed errors are classified by type; anything else by its message text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from taskweave.config.settings import Settings, get_settings
from taskweave.exceptions import NetworkError, RateLimitError, describe_error

_NETWORK_PATTERNS: Tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
)
_RATE_LIMIT_PATTERNS: Tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "429",
)


class FailureKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    UNRECOVERABLE = "unrecoverable"


@dataclass(frozen=True)
class FailurePattern:
    """How a failure should be handled."""

    kind: FailureKind
    is_recoverable: bool
    confidence: float
    backoff_seconds: float
    suggested_fix: str
    reason: str
    matched_pattern: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "is_recoverable": self.is_recoverable,
            "confidence": self.confidence,
            "backoff_seconds": self.backoff_seconds,
            "suggested_fix": self.suggested_fix,
            "reason": self.reason,
            "matched_pattern": self.matched_pattern,
        }


class FailureClassifier:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def classify(self, error: Any) -> FailurePattern:
        """Classify an exception or an error message."""
        if isinstance(error, RateLimitError):
            return self._rate_limit(type(error).__name__, None)
        if isinstance(error, (NetworkError, TimeoutError, ConnectionError)):
            return self._network(type(error).__name__, None)

        text = describe_error(error) if isinstance(error, BaseException) else str(error or "")
        haystack = text.lower()

        pattern = _first_match(haystack, _NETWORK_PATTERNS)
        if pattern is not None:
            return self._network(f"message matched '{pattern}'", pattern)
        pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
        if pattern is not None:
            return self._rate_limit(f"message matched '{pattern}'", pattern)

        return FailurePattern(
            kind=FailureKind.UNRECOVERABLE,
            is_recoverable=False,
            confidence=0.0,
            backoff_seconds=0.0,
            suggested_fix="manual_intervention",
            reason=text or "unknown error",
        )

    def _network(self, reason: str, pattern: Optional[str]) -> FailurePattern:
        return FailurePattern(
            kind=FailureKind.NETWORK,
            is_recoverable=True,
            confidence=0.8,
            backoff_seconds=self._settings.network_backoff_seconds,
            suggested_fix="retry_with_backoff",
            reason=reason,
            matched_pattern=pattern,
        )

    def _rate_limit(self, reason: str, pattern: Optional[str]) -> FailurePattern:
        return FailurePattern(
            kind=FailureKind.RATE_LIMIT,
            is_recoverable=True,
            confidence=0.9,
            backoff_seconds=self._settings.rate_limit_backoff_seconds,
            suggested_fix="delay_and_retry",
            reason=reason,
            matched_pattern=pattern,
        )


def _first_match(haystack: str, patterns: Tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
