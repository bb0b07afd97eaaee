"""
Structural validation of tool-calling turn sequences.

A tool turn must answer exactly one open invocation of the closest earlier
non-tool turn, which must be an assistant turn bearing invocations. Every
invocation must be answered before the next non-tool turn or the end of the
sequence.

Validation runs in two tiers. While a user turn falls inside the recency
window the conversation is treated as mid-exchange and validation only flags
problems; otherwise the first violation is raised as an IntegrityError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import ValidationConfig
from .errors import (
    IntegrityError,
    MalformedInvocationIdError,
    MalformedToolReferenceError,
    ToolTurnPositionError,
    UnansweredToolCallError,
    UnmatchedToolReferenceError,
)
from .tool_ids import ToolIdPolicy, get_id_policy
from .turn_store import TurnStore
from .types import LifecycleState, Role, Turn

logger = logging.getLogger(__name__)


class ViolationKind(str, Enum):
    """Kinds of structural violation."""

    TOOL_WITHOUT_INVOCATIONS = "tool_without_invocations"
    MALFORMED_REFERENCE = "malformed_reference"
    UNMATCHED_REFERENCE = "unmatched_reference"
    UNANSWERED_INVOCATIONS = "unanswered_invocations"
    MALFORMED_INVOCATION_ID = "malformed_invocation_id"


_ERROR_TYPES: dict[ViolationKind, type[IntegrityError]] = {
    ViolationKind.TOOL_WITHOUT_INVOCATIONS: ToolTurnPositionError,
    ViolationKind.MALFORMED_REFERENCE: MalformedToolReferenceError,
    ViolationKind.UNMATCHED_REFERENCE: UnmatchedToolReferenceError,
    ViolationKind.UNANSWERED_INVOCATIONS: UnansweredToolCallError,
    ViolationKind.MALFORMED_INVOCATION_ID: MalformedInvocationIdError,
}


class ValidationMode(str, Enum):
    """Validation tier."""

    BASIC = "basic"
    FULL = "full"


@dataclass(frozen=True)
class Violation:
    """One structural problem found in a turn sequence."""

    kind: ViolationKind
    message: str
    index: int
    turn_sequence: int | None = None
    tool_call_ids: tuple[str, ...] = ()

    def to_error(self) -> IntegrityError:
        """Build the matching IntegrityError subclass."""
        return _ERROR_TYPES[self.kind](self.message, self.turn_sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "index": self.index,
            "turn_sequence": self.turn_sequence,
            "tool_call_ids": list(self.tool_call_ids),
        }


@dataclass
class ValidationReport:
    """Outcome of validating a turn sequence."""

    violations: list[Violation] = field(default_factory=list)
    mode: ValidationMode = ValidationMode.FULL
    turn_count: int = 0

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def first(self) -> Violation | None:
        return self.violations[0] if self.violations else None

    def of_kind(self, kind: ViolationKind) -> list[Violation]:
        """Violations of one kind."""
        return [v for v in self.violations if v.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "mode": self.mode.value,
            "turn_count": self.turn_count,
            "violations": [v.to_dict() for v in self.violations],
        }


def _validate_entries(
    entries: Sequence[tuple[str, str | None, list[str], int | None]],
    id_policy: ToolIdPolicy,
) -> list[Violation]:
    """
    Core protocol check over (role, tool_call_id, invocation_ids, sequence) tuples.

    Shared by turn validation and wire validation so both apply identical rules.
    """
    violations: list[Violation] = []
    anchor_index: int | None = None
    anchor_sequence: int | None = None
    open_ids: set[str] = set()
    seen_ids: set[str] = set()

    def close_anchor() -> None:
        if anchor_index is not None and open_ids:
            pending = tuple(sorted(open_ids))
            violations.append(
                Violation(
                    kind=ViolationKind.UNANSWERED_INVOCATIONS,
                    message=f"invocations {', '.join(pending)} were never answered",
                    index=anchor_index,
                    turn_sequence=anchor_sequence,
                    tool_call_ids=pending,
                )
            )

    for index, (role, tool_call_id, invocation_ids, sequence) in enumerate(entries):
        if role == Role.TOOL.value:
            if anchor_index is None:
                violations.append(
                    Violation(
                        kind=ViolationKind.TOOL_WITHOUT_INVOCATIONS,
                        message=f"tool turn at position {index} does not follow "
                        "an assistant turn with tool invocations",
                        index=index,
                        turn_sequence=sequence,
                    )
                )
                continue
            if not id_policy.is_valid(tool_call_id):
                violations.append(
                    Violation(
                        kind=ViolationKind.MALFORMED_REFERENCE,
                        message=f"tool turn at position {index} has a missing or "
                        f"malformed tool_call_id {tool_call_id!r}",
                        index=index,
                        turn_sequence=sequence,
                    )
                )
                continue
            if tool_call_id not in open_ids:
                violations.append(
                    Violation(
                        kind=ViolationKind.UNMATCHED_REFERENCE,
                        message=f"tool turn at position {index} references "
                        f"{tool_call_id} which matches no open invocation",
                        index=index,
                        turn_sequence=sequence,
                        tool_call_ids=(tool_call_id,),
                    )
                )
                continue
            open_ids.discard(tool_call_id)
            continue

        close_anchor()
        anchor_index, anchor_sequence, open_ids = None, None, set()

        if role == Role.ASSISTANT.value and invocation_ids:
            bad = [
                inv_id
                for inv_id in invocation_ids
                if not id_policy.is_valid(inv_id) or inv_id in seen_ids
            ]
            if bad or len(set(invocation_ids)) != len(invocation_ids):
                violations.append(
                    Violation(
                        kind=ViolationKind.MALFORMED_INVOCATION_ID,
                        message=f"assistant turn at position {index} carries malformed "
                        "or duplicate invocation ids",
                        index=index,
                        turn_sequence=sequence,
                        tool_call_ids=tuple(bad),
                    )
                )
            anchor_index, anchor_sequence = index, sequence
            open_ids = set(invocation_ids)
            seen_ids.update(invocation_ids)

    close_anchor()
    return violations


def validate_turns(turns: Sequence[Turn], id_policy: ToolIdPolicy) -> ValidationReport:
    """
    Validate a turn sequence.

    Args:
        turns: Turns in sequence order
        id_policy: Tool-invocation id policy

    Returns:
        ValidationReport listing every violation in order
    """
    entries = [
        (turn.role.value, turn.tool_call_id, turn.invocation_ids, turn.sequence or None)
        for turn in turns
    ]
    return ValidationReport(
        violations=_validate_entries(entries, id_policy),
        turn_count=len(turns),
    )


def longest_valid_prefix(turns: Sequence[Turn], id_policy: ToolIdPolicy) -> list[Turn]:
    """
    Longest prefix made only of complete, well-formed exchanges.

    Keeps user and system turns, plain assistant turns, and assistant turns
    immediately followed by tool turns answering each invocation exactly once.
    Stops at the first turn that breaks these rules.

    Args:
        turns: Turns in sequence order
        id_policy: Tool-invocation id policy

    Returns:
        The prefix as a new list
    """
    prefix: list[Turn] = []
    seen_ids: set[str] = set()
    i = 0
    while i < len(turns):
        turn = turns[i]
        if turn.role == Role.TOOL:
            break
        if turn.role != Role.ASSISTANT or not turn.tool_invocations:
            prefix.append(turn)
            i += 1
            continue

        ids = turn.invocation_ids
        if (
            len(set(ids)) != len(ids)
            or any(not id_policy.is_valid(inv_id) for inv_id in ids)
            or seen_ids.intersection(ids)
        ):
            break

        pending = set(ids)
        block = [turn]
        j = i + 1
        while j < len(turns) and pending and turns[j].role == Role.TOOL:
            ref = turns[j].tool_call_id
            if ref not in pending:
                break
            pending.discard(ref)
            block.append(turns[j])
            j += 1
        if pending:
            break

        prefix.extend(block)
        seen_ids.update(ids)
        i = j
    return prefix


class IntegrityValidator:
    """
    Two-tier integrity checks against stored conversations.

    Example:
        validator = IntegrityValidator(store)
        report = validator.validate(turns)
        validator.ensure_integrity(conversation_id)  # may raise IntegrityError
    """

    def __init__(
        self,
        store: TurnStore,
        id_policy: ToolIdPolicy | None = None,
        config: ValidationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize validator.

        Args:
            store: Turn store to read conversations from
            id_policy: Tool-invocation id policy (defaults to the configured one)
            config: Validation configuration
            clock: Wall-clock time source in seconds
        """
        self.store = store
        self.config = config or ValidationConfig()
        self.id_policy = id_policy or get_id_policy(self.config.tool_id_policy)
        self._clock = clock

    def validate(self, turns: Sequence[Turn]) -> ValidationReport:
        """Validate a turn sequence without touching the store."""
        return validate_turns(turns, self.id_policy)

    def select_mode(self, turns: Sequence[Turn]) -> ValidationMode:
        """Basic while a user turn falls inside the recency window, full otherwise."""
        cutoff = self._clock() - self.config.active_window_seconds
        for turn in turns:
            if turn.role == Role.USER and turn.created_at > cutoff:
                return ValidationMode.BASIC
        return ValidationMode.FULL

    def ensure_integrity(
        self, conversation_id: str, mode: ValidationMode | None = None
    ) -> ValidationReport:
        """
        Check a stored conversation under the two-tier policy.

        Violations mark the conversation as needing cleanup. Turns are never
        removed here.

        Args:
            conversation_id: Conversation to check
            mode: Force a tier instead of selecting it from recent activity

        Returns:
            ValidationReport (always valid in full mode)

        Raises:
            IntegrityError: First violation, in full mode only
        """
        turns = self.store.list_turns(conversation_id)
        report = self.validate(turns)
        report.mode = mode or self.select_mode(turns)

        if report.valid:
            return report

        for violation in report.violations:
            logger.warning(
                "Conversation %s %s violation: %s",
                conversation_id,
                report.mode.value,
                violation.message,
            )

        conversation = self.store.get_conversation(conversation_id)
        if conversation.lifecycle == LifecycleState.STABLE:
            conversation.lifecycle = LifecycleState.NEEDS_CLEANUP
            self.store.update_conversation(conversation)

        if report.mode == ValidationMode.FULL:
            self.raise_for(report)
        return report

    def validate_wire(self, messages: Sequence[dict[str, Any]]) -> ValidationReport:
        """
        Validate an already-built wire message list.

        Args:
            messages: Wire dictionaries ({role, content, tool_calls?, tool_call_id?})

        Returns:
            ValidationReport
        """
        entries = [
            (
                message.get("role", ""),
                message.get("tool_call_id"),
                [call.get("id", "") for call in message.get("tool_calls") or []],
                None,
            )
            for message in messages
        ]
        return ValidationReport(
            violations=_validate_entries(entries, self.id_policy),
            turn_count=len(messages),
        )

    def longest_valid_prefix(self, turns: Sequence[Turn]) -> list[Turn]:
        """Longest prefix of complete exchanges under this validator's id policy."""
        return longest_valid_prefix(turns, self.id_policy)

    @staticmethod
    def raise_for(report: ValidationReport) -> None:
        """
        Raise the first violation of a report, if any.

        Raises:
            IntegrityError: Subclass matching the first violation's kind
        """
        if report.first is not None:
            raise report.first.to_error()


__all__ = [
    "IntegrityValidator",
    "ValidationMode",
    "ValidationReport",
    "Violation",
    "ViolationKind",
    "longest_valid_prefix",
    "validate_turns",
]
