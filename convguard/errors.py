"""
Exception hierarchy for convguard.

Integrity errors carry a message prefix that the error classifier maps to
the conversation_structure category, so locally detected corruption and
remote-reported corruption take the same recovery path.
"""

from __future__ import annotations

from typing import Any

INTEGRITY_PREFIX = "conversation integrity violation"


class ConvGuardError(Exception):
    """Base exception for all convguard errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class StoreError(ConvGuardError):
    """The turn store could not complete an operation."""


class ConversationNotFoundError(StoreError):
    """No conversation with the requested id exists."""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} not found",
            {"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id


class IntegrityError(ConvGuardError):
    """A turn sequence violates the tool-call protocol."""

    kind = "integrity"

    def __init__(self, message: str, turn_sequence: int | None = None):
        super().__init__(
            f"{INTEGRITY_PREFIX}: {message}",
            {"kind": self.kind, "turn_sequence": turn_sequence},
        )
        self.turn_sequence = turn_sequence


class ToolTurnPositionError(IntegrityError):
    """Tool turn not anchored to an assistant turn bearing invocations."""

    kind = "tool_without_invocations"


class MalformedToolReferenceError(IntegrityError):
    """Tool turn reference missing or malformed."""

    kind = "malformed_reference"


class UnmatchedToolReferenceError(IntegrityError):
    """Tool turn reference matches no open invocation."""

    kind = "unmatched_reference"


class UnansweredToolCallError(IntegrityError):
    """Assistant invocations not fully answered."""

    kind = "unanswered_invocations"


class MalformedInvocationIdError(IntegrityError):
    """Assistant turn carries a malformed or duplicate invocation id."""

    kind = "malformed_invocation_id"


class RepairError(ConvGuardError):
    """Repair could not produce a valid prefix."""


class CheckpointError(ConvGuardError):
    """A checkpoint could not be created or restored."""


class BranchError(ConvGuardError):
    """A recovery branch could not be created or merged."""


class CircuitOpenError(ConvGuardError):
    """Remote dependency is short-circuited by an open breaker."""

    def __init__(self, dependency: str, retry_after: float | None = None):
        super().__init__(
            f"Service unavailable: circuit breaker for {dependency} is open",
            {"dependency": dependency, "retry_after": retry_after},
        )
        self.dependency = dependency
        self.retry_after = retry_after


class CompletionTimeoutError(ConvGuardError):
    """Remote completion call exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Request timeout: completion call exceeded {timeout_seconds:g} seconds",
            {"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


__all__ = [
    "BranchError",
    "CheckpointError",
    "CircuitOpenError",
    "CompletionTimeoutError",
    "ConvGuardError",
    "ConversationNotFoundError",
    "INTEGRITY_PREFIX",
    "IntegrityError",
    "MalformedInvocationIdError",
    "MalformedToolReferenceError",
    "RepairError",
    "StoreError",
    "ToolTurnPositionError",
    "UnansweredToolCallError",
    "UnmatchedToolReferenceError",
]
