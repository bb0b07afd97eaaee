"""
Best-effort cleanup of corrupted turn sequences.

Removes tool turns that answer no open invocation of their anchor, flags
interrupted exchanges and truncates to the longest valid prefix when the
remainder is still invalid.
Repair is idempotent and a no-op on valid input.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import RepairError, StoreError
from .locks import ConversationLocks
from .tool_ids import ToolIdPolicy
from .turn_store import TurnStore
from .types import LifecycleState, Role, Turn
from .validator import IntegrityValidator, ViolationKind

logger = logging.getLogger(__name__)


def stray_tool_turns(turns: Sequence[Turn], policy: ToolIdPolicy) -> list[Turn]:
    """Tool turns with a malformed reference or closing no open invocation of their anchor."""
    stray = []
    open_ids: set[str] = set()
    for turn in turns:
        if turn.role != Role.TOOL:
            # only an assistant turn with invocations opens ids
            open_ids = set(turn.invocation_ids) if turn.role == Role.ASSISTANT else set()
        elif not policy.is_valid(turn.tool_call_id) or turn.tool_call_id not in open_ids:
            stray.append(turn)
        else:
            open_ids.discard(turn.tool_call_id)
    return stray


@dataclass
class RepairReport:
    """What a repair pass removed and flagged, by turn sequence."""

    conversation_id: str
    removed_malformed: list[int] = field(default_factory=list)
    removed_orphans: list[int] = field(default_factory=list)
    incomplete_exchanges: list[int] = field(default_factory=list)
    truncated: list[int] = field(default_factory=list)
    truncated_after: int | None = None

    @property
    def removed_total(self) -> int:
        return len(self.removed_malformed) + len(self.removed_orphans) + len(self.truncated)

    @property
    def changed(self) -> bool:
        return self.removed_total > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "conversation_id": self.conversation_id,
            "removed_malformed": len(self.removed_malformed),
            "removed_orphans": len(self.removed_orphans),
            "incomplete_exchanges": len(self.incomplete_exchanges),
            "truncated": len(self.truncated),
            "truncated_after": self.truncated_after,
            "removed_total": self.removed_total,
        }


class SequenceRepairer:
    """
    Repairs stored conversations in place.

    Holds the conversation's thread lock for the whole pass.
    """

    def __init__(
        self,
        store: TurnStore,
        validator: IntegrityValidator,
        locks: ConversationLocks | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.validator = validator
        self.locks = locks or ConversationLocks()
        self._clock = clock

    def repair(self, conversation_id: str) -> RepairReport:
        """
        Repair a conversation and mark it stable.

        Args:
            conversation_id: Conversation to repair

        Returns:
            RepairReport describing removed and flagged turns

        Raises:
            RepairError: If the store cannot apply the repair
            ConversationNotFoundError: If the conversation does not exist
        """
        with self.locks.sync_lock(conversation_id):
            turns = self.store.list_turns(conversation_id)
            report = RepairReport(conversation_id=conversation_id)
            policy = self.validator.id_policy

            stray = stray_tool_turns(turns, policy)
            for turn in stray:
                if policy.is_valid(turn.tool_call_id):
                    report.removed_orphans.append(turn.sequence)
                else:
                    report.removed_malformed.append(turn.sequence)
            stray_sequences = {turn.sequence for turn in stray}
            remaining = [turn for turn in turns if turn.sequence not in stray_sequences]

            validation = self.validator.validate(remaining)
            report.incomplete_exchanges = [
                v.turn_sequence
                for v in validation.of_kind(ViolationKind.UNANSWERED_INVOCATIONS)
                if v.turn_sequence is not None
            ]
            for sequence in report.incomplete_exchanges:
                logger.warning(
                    "Conversation %s: assistant turn %d has unanswered tool invocations",
                    conversation_id,
                    sequence,
                )

            if not validation.valid:
                prefix = self.validator.longest_valid_prefix(remaining)
                report.truncated = [turn.sequence for turn in remaining[len(prefix) :]]
                report.truncated_after = prefix[-1].sequence if prefix else 0

            try:
                doomed = report.removed_malformed + report.removed_orphans
                if doomed:
                    self.store.delete_turns(conversation_id, doomed)
                if report.truncated_after is not None:
                    self.store.delete_turns_after(conversation_id, report.truncated_after)

                conversation = self.store.get_conversation(conversation_id)
                conversation.lifecycle = LifecycleState.STABLE
                conversation.last_stable_at = self._clock()
                self.store.update_conversation(conversation)
            except StoreError as e:
                logger.error("Repair of conversation %s failed: %s", conversation_id, e)
                raise RepairError(
                    f"Failed to repair conversation {conversation_id}: {e}",
                    report.to_dict(),
                ) from e

        if report.changed:
            logger.info("Repaired conversation %s: %s", conversation_id, report.to_dict())
        return report


__all__ = ["RepairReport", "SequenceRepairer", "stray_tool_turns"]
