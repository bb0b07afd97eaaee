"""
Conversation health monitoring.

Scores conversations, heals them progressively (repair, then branch) and
runs periodic sweeps that also expire old checkpoints and recovery contexts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .branching import BranchManager
from .checkpoints import CheckpointManager
from .config import HealthConfig
from .errors import ConvGuardError, RepairError
from .repair import SequenceRepairer, stray_tool_turns
from .turn_store import TurnStore
from .types import (
    Conversation,
    ConversationStatus,
    LifecycleState,
    Turn,
    count_invocations,
)
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)


def orphaned_tool_turns(turns: list[Turn], validator: IntegrityValidator) -> list[Turn]:
    """Tool turns with a malformed reference or one closing no open invocation."""
    return stray_tool_turns(turns, validator.id_policy)


def health_score(
    conversation: Conversation,
    orphaned_count: int,
    now: float,
    stale_after_seconds: float = 3600.0,
) -> int:
    """
    Score a conversation from 0 to 100.

    Deducts 10 per orphaned tool turn, 30 for the error state, 15 for
    needs_cleanup and 20 when the last stable point is older than
    stale_after_seconds.
    """
    score = 100 - orphaned_count * 10
    if conversation.lifecycle == LifecycleState.ERROR:
        score -= 30
    elif conversation.lifecycle == LifecycleState.NEEDS_CLEANUP:
        score -= 15
    if (
        conversation.last_stable_at is not None
        and now - conversation.last_stable_at > stale_after_seconds
    ):
        score -= 20
    return max(score, 0)


@dataclass
class HealthMetrics:
    """Health snapshot of one conversation."""

    conversation_id: str
    turn_count: int
    tool_call_count: int
    orphaned_turns: int
    lifecycle: LifecycleState
    last_stable_at: float | None
    has_integrity_issues: bool
    health_score: int
    available_checkpoints: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "turn_count": self.turn_count,
            "tool_call_count": self.tool_call_count,
            "orphaned_turns": self.orphaned_turns,
            "lifecycle": self.lifecycle.value,
            "last_stable_at": self.last_stable_at,
            "has_integrity_issues": self.has_integrity_issues,
            "health_score": self.health_score,
            "available_checkpoints": self.available_checkpoints,
        }


class HealStatus(str, Enum):
    """Outcome of healing one conversation."""

    HEALTHY = "healthy"
    HEALED = "healed"
    RECOVERY_BRANCH_CREATED = "recovery_branch_created"
    ARCHIVED = "archived"


@dataclass
class HealResult:
    """What healing did to a conversation."""

    status: HealStatus
    actions_taken: list[str] = field(default_factory=list)
    recovery_conversation_id: str | None = None
    orphaned_turns_cleaned: int = 0


@dataclass
class SweepSummary:
    """Counters from one health sweep."""

    checked: int = 0
    healthy: int = 0
    repaired: int = 0
    branched: int = 0
    archived: int = 0
    failed: int = 0
    orphaned_turns_cleaned: int = 0
    checkpoints_deleted: int = 0
    recovery_contexts_deleted: int = 0
    duration_seconds: float = 0.0
    alert_threshold: float = 95.0

    @property
    def health_percentage(self) -> float:
        """Share of checked conversations that ended healthy or repaired."""
        if self.checked == 0:
            return 100.0
        return round((self.healthy + self.repaired) / self.checked * 100, 2)

    @property
    def alert(self) -> bool:
        return self.health_percentage < self.alert_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "healthy": self.healthy,
            "repaired": self.repaired,
            "branched": self.branched,
            "archived": self.archived,
            "failed": self.failed,
            "orphaned_turns_cleaned": self.orphaned_turns_cleaned,
            "checkpoints_deleted": self.checkpoints_deleted,
            "recovery_contexts_deleted": self.recovery_contexts_deleted,
            "duration_seconds": self.duration_seconds,
            "health_percentage": self.health_percentage,
            "alert": self.alert,
        }


class ConversationHealthMonitor:
    """
    Scores, heals and sweeps conversations.

    Example:
        monitor = ConversationHealthMonitor(store, validator, repairer, branches, checkpoints)
        summary = monitor.sweep()
        if summary.alert:
            page_someone(summary.to_dict())
    """

    def __init__(
        self,
        store: TurnStore,
        validator: IntegrityValidator,
        repairer: SequenceRepairer,
        branches: BranchManager,
        checkpoints: CheckpointManager,
        config: HealthConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.validator = validator
        self.repairer = repairer
        self.branches = branches
        self.checkpoints = checkpoints
        self.config = config or HealthConfig()
        self._clock = clock

    def metrics(self, conversation_id: str) -> HealthMetrics:
        """Health metrics and score of one conversation."""
        conversation = self.store.get_conversation(conversation_id)
        turns = self.store.list_turns(conversation_id)
        orphaned = len(orphaned_tool_turns(turns, self.validator))
        return HealthMetrics(
            conversation_id=conversation_id,
            turn_count=len(turns),
            tool_call_count=count_invocations(turns),
            orphaned_turns=orphaned,
            lifecycle=conversation.lifecycle,
            last_stable_at=conversation.last_stable_at,
            has_integrity_issues=not self.validator.validate(turns).valid,
            health_score=health_score(
                conversation, orphaned, self._clock(), self.config.stale_after_seconds
            ),
            available_checkpoints=self.checkpoints.list(conversation_id),
        )

    def validate_and_heal(self, conversation_id: str) -> HealResult:
        """
        Heal progressively: repair first, branch when repair fails.

        Raises:
            BranchError: If branching is needed and fails
        """
        turns = self.store.list_turns(conversation_id)
        if self.validator.validate(turns).valid:
            conversation = self.store.get_conversation(conversation_id)
            conversation.lifecycle = LifecycleState.STABLE
            conversation.last_stable_at = self._clock()
            self.store.update_conversation(conversation)
            return HealResult(status=HealStatus.HEALTHY)

        try:
            report = self.repairer.repair(conversation_id)
        except RepairError as e:
            logger.error("Healing failed for %s: %s", conversation_id, e)
            branch = self.branches.create_recovery_branch(conversation_id, "healing failed")
            return HealResult(
                status=HealStatus.RECOVERY_BRANCH_CREATED,
                actions_taken=[f"created_recovery_branch_{branch.id}"],
                recovery_conversation_id=branch.id,
            )

        cleaned = len(report.removed_orphans) + len(report.removed_malformed)
        actions = []
        if cleaned:
            actions.append(f"cleaned_{cleaned}_orphaned_turns")
        actions.append("repaired_conversation_structure")
        return HealResult(
            status=HealStatus.HEALED, actions_taken=actions, orphaned_turns_cleaned=cleaned
        )

    def check_conversation(self, conversation_id: str) -> HealResult:
        """Archive a severely broken conversation, otherwise heal it."""
        metrics = self.metrics(conversation_id)
        logger.info(
            "Checking health for conversation %s (score %d)",
            conversation_id,
            metrics.health_score,
        )

        if (
            self.config.auto_archive_broken
            and metrics.health_score < self.config.archive_below_score
        ):
            self._archive(conversation_id)
            return HealResult(status=HealStatus.ARCHIVED, actions_taken=["archived"])

        return self.validate_and_heal(conversation_id)

    def needs_attention(self, conversation: Conversation) -> bool:
        """Non-stable, never stable, or not confirmed stable recently."""
        if conversation.lifecycle != LifecycleState.STABLE:
            return True
        if conversation.last_stable_at is None:
            return True
        return self._clock() - conversation.last_stable_at > self.config.attention_after_seconds

    def sweep(self, check_all: bool = False) -> SweepSummary:
        """
        Check active conversations and expire old recovery data.

        Args:
            check_all: Check every active conversation, not only those needing attention

        Returns:
            SweepSummary
        """
        started = self._clock()
        summary = SweepSummary(alert_threshold=self.config.alert_threshold)
        logger.info("Starting conversation health sweep")

        for conversation in self.store.list_conversations(status=ConversationStatus.ACTIVE):
            if not check_all and not self.needs_attention(conversation):
                continue
            summary.checked += 1
            try:
                result = self.check_conversation(conversation.id)
            except ConvGuardError as e:
                logger.error("Error processing conversation %s: %s", conversation.id, e)
                summary.failed += 1
                continue

            summary.orphaned_turns_cleaned += result.orphaned_turns_cleaned
            if result.status == HealStatus.HEALTHY:
                summary.healthy += 1
            elif result.status == HealStatus.HEALED:
                summary.repaired += 1
            elif result.status == HealStatus.RECOVERY_BRANCH_CREATED:
                summary.branched += 1
            else:
                summary.archived += 1

        summary.checkpoints_deleted = self.checkpoints.cleanup_expired()
        summary.recovery_contexts_deleted = self.store.delete_expired_recovery_contexts(
            now=self._clock()
        )
        summary.duration_seconds = round(self._clock() - started, 3)

        logger.info("Conversation health sweep completed: %s", summary.to_dict())
        if summary.alert:
            logger.warning(
                "Conversation health %.2f%% is below the %.2f%% threshold",
                summary.health_percentage,
                summary.alert_threshold,
            )
        return summary

    def _archive(self, conversation_id: str) -> None:
        logger.info("Archiving severely corrupted conversation %s", conversation_id)
        conversation = self.store.get_conversation(conversation_id)
        conversation.status = ConversationStatus.ARCHIVED
        conversation.lifecycle = LifecycleState.ERROR
        conversation.title = f"{conversation.title} (Auto-Archived - Corrupted)".strip()
        self.store.update_conversation(conversation)


__all__ = [
    "ConversationHealthMonitor",
    "HealResult",
    "HealStatus",
    "HealthMetrics",
    "SweepSummary",
    "health_score",
    "orphaned_tool_turns",
]
