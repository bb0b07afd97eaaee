"""
Pattern-based error classification.

Errors raised by the remote completion dependency are not under our control,
so classification matches on the error's text rather than its type. Rules
live in a versioned ClassificationTable; the first matching rule wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import INTEGRITY_PREFIX

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Fixed error taxonomy."""

    RATE_LIMIT = "rate_limit"
    CONVERSATION_STRUCTURE = "conversation_structure"
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """How serious a category of error is."""

    LOW = "low"
    WARNING = "warning"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryStrategy(str, Enum):
    """Named default strategy for a category."""

    BACKOFF = "exponential_backoff"
    REPAIR_THEN_BRANCH = "repair_and_retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    CIRCUIT_BREAKER = "circuit_breaker"
    USER_INTERVENTION = "user_intervention"
    USER_CORRECTION = "user_correction"


@dataclass(frozen=True)
class CategoryProfile:
    """Recovery characteristics shared by every error of a category."""

    severity: Severity
    recoverable: bool
    strategy: RecoveryStrategy


@dataclass(frozen=True)
class ClassificationRule:
    """A case-insensitive regular expression mapped to a category."""

    pattern: str
    category: ErrorCategory

    def matches(self, message: str) -> bool:
        return re.search(self.pattern, message, re.IGNORECASE) is not None


@dataclass(frozen=True)
class ClassificationTable:
    """
    Versioned, ordered rule table with per-category profiles.

    Rules are evaluated in order. Structure rules precede the generic
    validation and network rules so that "invalid parameter: messages"
    style errors are not mistaken for user input problems.
    """

    version: str
    rules: tuple[ClassificationRule, ...]
    profiles: Mapping[ErrorCategory, CategoryProfile]
    default_category: ErrorCategory = ErrorCategory.UNKNOWN

    def match(self, message: str) -> tuple[ErrorCategory, ClassificationRule | None]:
        """First matching category and the rule that matched."""
        for rule in self.rules:
            if rule.matches(message):
                return rule.category, rule
        return self.default_category, None

    def profile(self, category: ErrorCategory) -> CategoryProfile:
        return self.profiles[category]

    def with_rules(self, extra: Iterable[ClassificationRule], version: str) -> ClassificationTable:
        """New table with extra rules evaluated before the existing ones."""
        return ClassificationTable(
            version=version,
            rules=tuple(extra) + self.rules,
            profiles=self.profiles,
            default_category=self.default_category,
        )


def _rules(category: ErrorCategory, *patterns: str) -> list[ClassificationRule]:
    return [ClassificationRule(pattern, category) for pattern in patterns]


DEFAULT_TABLE = ClassificationTable(
    version="2",
    rules=tuple(
        _rules(
            ErrorCategory.CONVERSATION_STRUCTURE,
            re.escape(INTEGRITY_PREFIX),
            r"tool_use.*tool_result",
            r"tool_use_id",
            r"tool_calls.*must be followed by tool messages",
            r"tool_call_id.*did not have response messages",
            r"assistant message.*tool_calls.*must be followed",
            r"invalid.*parameter.*messages",
        )
        + _rules(
            ErrorCategory.RATE_LIMIT,
            r"rate[ _]limit",
            r"too many requests",
            r"quota exceeded",
        )
        + _rules(
            ErrorCategory.AUTH_ERROR,
            r"unauthorized",
            r"authentication failed",
            r"authentication_error",
            r"invalid (api[_ ])?token",
            r"invalid x-api-key",
        )
        + _rules(
            ErrorCategory.SERVICE_UNAVAILABLE,
            r"service unavailable",
            r"server error",
            r"internal error",
            r"overloaded",
        )
        + _rules(
            ErrorCategory.NETWORK_ERROR,
            r"network",
            r"connection",
            r"timeout",
            r"timed out",
            r"unreachable",
        )
        + _rules(
            ErrorCategory.VALIDATION_ERROR,
            r"validation",
            r"invalid input",
            r"bad request",
            r"invalid_request_error",
        )
    ),
    profiles={
        ErrorCategory.RATE_LIMIT: CategoryProfile(Severity.WARNING, True, RecoveryStrategy.BACKOFF),
        ErrorCategory.CONVERSATION_STRUCTURE: CategoryProfile(
            Severity.HIGH, True, RecoveryStrategy.REPAIR_THEN_BRANCH
        ),
        ErrorCategory.NETWORK_ERROR: CategoryProfile(
            Severity.MEDIUM, True, RecoveryStrategy.BACKOFF
        ),
        ErrorCategory.SERVICE_UNAVAILABLE: CategoryProfile(
            Severity.HIGH, True, RecoveryStrategy.CIRCUIT_BREAKER
        ),
        ErrorCategory.AUTH_ERROR: CategoryProfile(
            Severity.HIGH, False, RecoveryStrategy.USER_INTERVENTION
        ),
        ErrorCategory.VALIDATION_ERROR: CategoryProfile(
            Severity.LOW, False, RecoveryStrategy.USER_CORRECTION
        ),
        ErrorCategory.UNKNOWN: CategoryProfile(
            Severity.MEDIUM, True, RecoveryStrategy.RETRY_WITH_BACKOFF
        ),
    },
)


@dataclass
class ErrorClassification:
    """Result of classifying one error."""

    category: ErrorCategory
    severity: Severity
    recoverable: bool
    strategy: RecoveryStrategy
    message: str
    error_type: str = "str"
    matched_pattern: str | None = None
    table_version: str = DEFAULT_TABLE.version
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "strategy": self.strategy.value,
            "message": self.message,
            "error_type": self.error_type,
            "matched_pattern": self.matched_pattern,
            "table_version": self.table_version,
        }


def error_message(error: BaseException | str | Mapping[str, Any]) -> str:
    """Text used for matching: the string itself, an exception's str, or a mapping's 'message'."""
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        return str(error.get("message", ""))
    return str(error) or error.__class__.__name__


class ErrorClassifier:
    """
    Map raised failures to categories using a ClassificationTable.

    Example:
        classifier = ErrorClassifier()
        result = classifier.classify(RuntimeError("rate limit exceeded"))
        assert result.category == ErrorCategory.RATE_LIMIT
    """

    def __init__(self, table: ClassificationTable | None = None) -> None:
        self.table = table or DEFAULT_TABLE

    def classify(self, error: BaseException | str | Mapping[str, Any]) -> ErrorClassification:
        """
        Classify an error.

        Args:
            error: Exception, message string, or mapping with a "message" key

        Returns:
            ErrorClassification (category unknown when nothing matches)
        """
        message = error_message(error)
        category, rule = self.table.match(message)
        profile = self.table.profile(category)

        classification = ErrorClassification(
            category=category,
            severity=profile.severity,
            recoverable=profile.recoverable,
            strategy=profile.strategy,
            message=message,
            error_type=type(error).__name__,
            matched_pattern=rule.pattern if rule else None,
            table_version=self.table.version,
        )
        logger.debug("Classified %r as %s", message, category.value)
        return classification


__all__ = [
    "CategoryProfile",
    "ClassificationRule",
    "ClassificationTable",
    "DEFAULT_TABLE",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "RecoveryStrategy",
    "Severity",
    "error_message",
]
