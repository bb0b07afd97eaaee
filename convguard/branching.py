"""
Recovery branches for corrupted conversations.

A recovery branch is a new conversation seeded from the longest structurally
valid prefix of a corrupted one. The original is archived in the error
state; a branch can later be merged back into a primary conversation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from .errors import BranchError, StoreError
from .locks import ConversationLocks
from .turn_store import TurnStore
from .types import Conversation, ConversationStatus, LifecycleState
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)


class MergeStrategy(str, Enum):
    """How a branch is merged into its primary conversation."""

    APPEND = "append"
    REPLACE = "replace"
    INTERLEAVE = "interleave"


class BranchManager:
    """Create and merge recovery branches."""

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

    def create_recovery_branch(self, conversation_id: str, reason: str = "") -> Conversation:
        """
        Seed a new conversation from the longest valid prefix of another.

        Args:
            conversation_id: Corrupted conversation
            reason: Why the branch was created (kept in branch metadata)

        Returns:
            The new stable conversation

        Raises:
            BranchError: If the store cannot create the branch
        """
        with self.locks.sync_lock(conversation_id):
            try:
                original = self.store.get_conversation(conversation_id)
                turns = self.store.list_turns(conversation_id)
                prefix = self.validator.longest_valid_prefix(turns)

                stamp = datetime.fromtimestamp(self._clock()).strftime("%H:%M")
                branch = self.store.create_conversation(
                    owner_id=original.owner_id,
                    title=f"{original.title} (Recovery {stamp})".strip(),
                    parent_id=original.id,
                    branch_point=len(prefix),
                    metadata={"recovery_reason": reason} if reason else {},
                )
                if prefix:
                    self.store.append_turns(
                        branch.id, [turn.copy_for(branch.id) for turn in prefix]
                    )

                original.status = ConversationStatus.ARCHIVED
                original.lifecycle = LifecycleState.ERROR
                original.title = f"{original.title} (Corrupted - {stamp})".strip()
                self.store.update_conversation(original)
            except StoreError as e:
                logger.error("Failed to create recovery branch: %s", e)
                raise BranchError(
                    f"Failed to create recovery branch: {e}",
                    {"conversation_id": conversation_id},
                ) from e

        logger.info(
            "Created recovery branch %s from corrupted conversation %s (%d of %d turns kept)",
            branch.id,
            conversation_id,
            len(prefix),
            len(turns),
        )
        return self.store.get_conversation(branch.id)

    def merge(
        self,
        primary_id: str,
        branch_id: str,
        strategy: MergeStrategy | str = MergeStrategy.APPEND,
    ) -> Conversation:
        """
        Merge a branch into a primary conversation.

        Args:
            primary_id: Conversation receiving the turns
            branch_id: Branch to merge (archived afterwards)
            strategy: append, replace or interleave

        Returns:
            The updated primary conversation

        Raises:
            BranchError: For interleave, unknown strategies, or store failures
        """
        try:
            strategy = MergeStrategy(strategy)
        except ValueError:
            raise BranchError(f"Unknown merge strategy: {strategy}") from None

        if strategy == MergeStrategy.INTERLEAVE:
            raise BranchError("Interleaving merge not yet implemented")

        with self.locks.sync_lock(primary_id), self.locks.sync_lock(branch_id):
            try:
                if strategy == MergeStrategy.APPEND:
                    self._merge_by_appending(primary_id, branch_id)
                else:
                    self._merge_by_replacing(primary_id, branch_id)
            except StoreError as e:
                logger.error("Failed to merge branch %s into %s: %s", branch_id, primary_id, e)
                raise BranchError(
                    f"Failed to merge branch: {e}",
                    {"primary_id": primary_id, "branch_id": branch_id},
                ) from e

        logger.info("Merged branch %s into %s (%s)", branch_id, primary_id, strategy.value)
        return self.store.get_conversation(primary_id)

    def _merge_by_appending(self, primary_id: str, branch_id: str) -> None:
        branch = self.store.get_conversation(branch_id)
        branch_turns = self.store.list_turns(branch_id)
        authored = branch_turns[branch.branch_point or 0 :]

        if authored:
            self.store.append_turns(
                primary_id,
                [
                    turn.copy_for(primary_id, metadata={"merged_from_branch": branch_id})
                    for turn in authored
                ],
            )

        primary = self.store.get_conversation(primary_id)
        if not self.validator.validate(self.store.list_turns(primary_id)).valid:
            logger.warning(
                "Merged conversation %s fails validation, marking for cleanup", primary_id
            )
            primary.lifecycle = LifecycleState.NEEDS_CLEANUP
            self.store.update_conversation(primary)

        self._archive(branch, "Merged")

    def _merge_by_replacing(self, primary_id: str, branch_id: str) -> None:
        branch = self.store.get_conversation(branch_id)
        branch_turns = self.store.list_turns(branch_id)

        self.store.delete_all_turns(primary_id)
        if branch_turns:
            self.store.append_turns(
                primary_id, [turn.copy_for(primary_id) for turn in branch_turns]
            )

        primary = self.store.get_conversation(primary_id)
        primary.lifecycle = LifecycleState.STABLE
        primary.last_stable_at = self._clock()
        self.store.update_conversation(primary)

        self._archive(branch, "Replaced Main")

    def _archive(self, branch: Conversation, label: str) -> None:
        branch.status = ConversationStatus.ARCHIVED
        branch.title = f"{branch.title} ({label})".strip()
        self.store.update_conversation(branch)


__all__ = ["BranchManager", "MergeStrategy"]
