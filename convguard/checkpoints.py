"""
Named point-in-time snapshots of conversations.

Checkpoints are only taken of structurally valid conversations. Restoring
deletes every turn appended after the snapshot, identified by sequence
number rather than by timestamp.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .config import CheckpointConfig
from .errors import CheckpointError, IntegrityError, StoreError
from .locks import ConversationLocks
from .turn_store import TurnStore
from .types import Checkpoint, LifecycleState, Role, count_invocations
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400


class CheckpointManager:
    """
    Create, list, restore and expire conversation checkpoints.

    Example:
        manager = CheckpointManager(store, validator)
        checkpoint = manager.create(conversation_id, "before-import")
        ...
        manager.restore(conversation_id, "before-import")
    """

    def __init__(
        self,
        store: TurnStore,
        validator: IntegrityValidator,
        locks: ConversationLocks | None = None,
        config: CheckpointConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize checkpoint manager.

        Args:
            store: Turn store holding conversations and checkpoints
            validator: Validator used to vet conversations before snapshotting
            locks: Shared per-conversation locks
            config: Checkpoint retention configuration
            clock: Wall-clock time source in seconds
        """
        self.store = store
        self.validator = validator
        self.locks = locks or ConversationLocks()
        self.config = config or CheckpointConfig()
        self._clock = clock

    def create(self, conversation_id: str, name: str | None = None) -> Checkpoint:
        """
        Snapshot a conversation.

        Args:
            conversation_id: Conversation to snapshot
            name: Checkpoint name, generated from the current time when omitted

        Returns:
            The stored checkpoint

        Raises:
            CheckpointError: If the conversation is empty, fails full
                validation, or already has a checkpoint with this name
        """
        with self.locks.sync_lock(conversation_id):
            now = self._clock()
            name = name or self._auto_name(now)

            try:
                conversation = self.store.get_conversation(conversation_id)
                turns = self.store.list_turns(conversation_id)
            except StoreError as e:
                raise CheckpointError(f"Failed to read conversation: {e}") from e

            if not turns:
                raise CheckpointError(
                    "Cannot checkpoint an empty conversation",
                    {"conversation_id": conversation_id},
                )
            try:
                self.validator.raise_for(self.validator.validate(turns))
            except IntegrityError as e:
                logger.error(
                    "Refusing checkpoint '%s' for conversation %s: %s",
                    name,
                    conversation_id,
                    e.message,
                )
                raise CheckpointError(
                    f"Failed to create conversation checkpoint: {e.message}",
                    {"conversation_id": conversation_id, "name": name},
                ) from e

            last_user = next((t.content for t in reversed(turns) if t.role == Role.USER), None)
            checkpoint = Checkpoint(
                conversation_id=conversation_id,
                name=name,
                created_at=now,
                turn_count=len(turns),
                tool_call_count=count_invocations(turns),
                lifecycle_state=conversation.lifecycle,
                last_sequence=turns[-1].sequence,
                turns_snapshot=tuple(turn.to_dict() for turn in turns),
                context_summary={
                    "owner_id": conversation.owner_id,
                    "title": conversation.title,
                    "last_user_message": last_user,
                    "conversation_length": len(turns),
                },
            )

            try:
                self.store.save_checkpoint(checkpoint)
            except StoreError as e:
                raise CheckpointError(
                    f"Failed to create conversation checkpoint: {e.message}",
                    {"conversation_id": conversation_id, "name": name},
                ) from e

            logger.info("Created checkpoint '%s' for conversation %s", name, conversation_id)
            self.prune(conversation_id)
            return checkpoint

    def restore(self, conversation_id: str, name: str) -> bool:
        """
        Roll a conversation back to a checkpoint.

        Deletes every turn sequenced after the snapshot and marks the
        conversation stable.

        Args:
            conversation_id: Conversation to restore
            name: Checkpoint name

        Returns:
            True on success

        Raises:
            CheckpointError: If the checkpoint does not exist or the store fails
        """
        with self.locks.sync_lock(conversation_id):
            checkpoint = self.store.get_checkpoint(conversation_id, name)
            if checkpoint is None:
                raise CheckpointError(
                    f"Checkpoint '{name}' not found",
                    {"conversation_id": conversation_id, "name": name},
                )

            try:
                removed = self.store.delete_turns_after(conversation_id, checkpoint.last_sequence)
                conversation = self.store.get_conversation(conversation_id)
                conversation.lifecycle = LifecycleState.STABLE
                conversation.last_stable_at = self._clock()
                self.store.update_conversation(conversation)
            except StoreError as e:
                logger.error("Failed to restore from checkpoint: %s", e)
                raise CheckpointError(f"Failed to restore checkpoint '{name}': {e}") from e

            logger.info(
                "Restored conversation %s from checkpoint '%s' (%d turns removed)",
                conversation_id,
                name,
                removed,
            )
            return True

    def list(self, conversation_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """
        Most recent checkpoint summaries, newest first.

        Args:
            conversation_id: Conversation to list
            limit: Maximum number of summaries (defaults to the configured limit)
        """
        limit = self.config.list_limit if limit is None else limit
        return [c.summary() for c in self.store.list_checkpoints(conversation_id, limit)]

    def get(self, conversation_id: str, name: str) -> Checkpoint | None:
        return self.store.get_checkpoint(conversation_id, name)

    def prune(self, conversation_id: str) -> int:
        """
        Drop checkpoints beyond the most recent max_checkpoints.

        Returns:
            Number of checkpoints deleted
        """
        excess = self.store.list_checkpoints(conversation_id)[self.config.max_checkpoints :]
        for checkpoint in excess:
            self.store.delete_checkpoint(conversation_id, checkpoint.name)
        if excess:
            logger.debug(
                "Pruned %d checkpoints from conversation %s", len(excess), conversation_id
            )
        return len(excess)

    def cleanup_expired(self) -> int:
        """
        Delete checkpoints older than the retention period.

        Returns:
            Number of checkpoints deleted
        """
        cutoff = self._clock() - self.config.retention_days * _SECONDS_PER_DAY
        deleted = self.store.delete_checkpoints_before(cutoff)
        if deleted:
            logger.info("Deleted %d expired checkpoints", deleted)
        return deleted

    @staticmethod
    def _auto_name(now: float) -> str:
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        return f"checkpoint_{stamp}"


__all__ = ["CheckpointManager"]
