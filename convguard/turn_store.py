"""
Turn store abstraction for pluggable conversation persistence.

Provides the TurnStore protocol with SQLite and InMemory implementations and
configurable backend selection. Turns are ordered by an explicit
per-conversation sequence counter that is never reused, so ordering does not
depend on wall-clock granularity.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .config import StoreConfig
from .errors import ConversationNotFoundError, StoreError
from .types import (
    Checkpoint,
    Conversation,
    ConversationStatus,
    RecoveryContext,
    Role,
    ToolInvocation,
    Turn,
)


class TurnStore(ABC):
    """
    Protocol for conversation storage backends.

    Every method is safe to call from several threads; multi-turn appends are
    atomic.
    """

    # -- conversations -----------------------------------------------------

    @abstractmethod
    def create_conversation(
        self,
        owner_id: str,
        title: str = "",
        parent_id: str | None = None,
        branch_point: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """
        Create a new conversation in the stable state.

        Args:
            owner_id: Owning user
            title: Display title
            parent_id: Conversation this one was branched from
            branch_point: Number of turns copied from the parent
            metadata: Additional metadata

        Returns:
            The created conversation
        """

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation:
        """
        Get a conversation by ID.

        Raises:
            ConversationNotFoundError: If no such conversation exists
        """

    @abstractmethod
    def update_conversation(self, conversation: Conversation) -> None:
        """Persist changes to a conversation's attributes."""

    @abstractmethod
    def list_conversations(
        self,
        status: ConversationStatus | None = None,
        owner_id: str | None = None,
    ) -> list[Conversation]:
        """List conversations, oldest first."""

    # -- turns -------------------------------------------------------------

    @abstractmethod
    def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation ordered by sequence."""

    @abstractmethod
    def append_turns(self, conversation_id: str, turns: Iterable[Turn]) -> list[Turn]:
        """
        Append turns atomically, assigning consecutive sequence numbers.

        Returns:
            The stored turns with sequence and conversation_id set
        """

    @abstractmethod
    def delete_turns(self, conversation_id: str, sequences: Iterable[int]) -> int:
        """
        Delete specific turns.

        Returns:
            Number of turns deleted
        """

    @abstractmethod
    def delete_turns_after(self, conversation_id: str, sequence: int) -> int:
        """
        Delete every turn with a sequence greater than `sequence`.

        Returns:
            Number of turns deleted
        """

    def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        """Append a single turn."""
        return self.append_turns(conversation_id, [turn])[0]

    def delete_all_turns(self, conversation_id: str) -> int:
        """Delete every turn of a conversation."""
        return self.delete_turns_after(conversation_id, 0)

    # -- checkpoints -------------------------------------------------------

    @abstractmethod
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint.

        Raises:
            StoreError: If a checkpoint with the same name exists
        """

    @abstractmethod
    def get_checkpoint(self, conversation_id: str, name: str) -> Checkpoint | None:
        """Get a checkpoint by name."""

    @abstractmethod
    def list_checkpoints(self, conversation_id: str, limit: int | None = None) -> list[Checkpoint]:
        """Checkpoints of a conversation, newest first."""

    @abstractmethod
    def delete_checkpoint(self, conversation_id: str, name: str) -> bool:
        """Delete a checkpoint; returns False if it did not exist."""

    @abstractmethod
    def delete_checkpoints_before(self, cutoff: float) -> int:
        """Delete checkpoints created before `cutoff` across all conversations."""

    # -- recovery contexts -------------------------------------------------

    @abstractmethod
    def save_recovery_context(self, context: RecoveryContext) -> None:
        """Insert or replace a recovery context."""

    @abstractmethod
    def get_recovery_context(
        self, owner_id: str, conversation_id: str, now: float | None = None
    ) -> RecoveryContext | None:
        """Most recent unexpired recovery context for an owner/conversation pair."""

    @abstractmethod
    def delete_recovery_contexts(self, conversation_id: str) -> int:
        """Delete all recovery contexts of a conversation."""

    @abstractmethod
    def delete_expired_recovery_contexts(self, now: float | None = None) -> int:
        """Delete expired recovery contexts."""

    @abstractmethod
    def count_active_recovery_contexts(self, now: float | None = None) -> int:
        """Number of unexpired recovery contexts."""


class InMemoryTurnStore(TurnStore):
    """In-memory implementation for testing and single-process use."""

    def __init__(self) -> None:
        """Initialize in-memory storage."""
        self._lock = threading.RLock()
        self._conversations: dict[str, Conversation] = {}
        self._turns: dict[str, list[Turn]] = {}
        self._counters: dict[str, int] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._recovery: dict[str, RecoveryContext] = {}

    def create_conversation(
        self,
        owner_id: str,
        title: str = "",
        parent_id: str | None = None,
        branch_point: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """Create a new conversation in the stable state."""
        conversation = Conversation(
            owner_id=owner_id,
            title=title,
            parent_id=parent_id,
            branch_point=branch_point,
            last_stable_at=time.time(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._conversations[conversation.id] = copy.deepcopy(conversation)
            self._turns[conversation.id] = []
            self._counters[conversation.id] = 0
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Get a conversation by ID."""
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            return copy.deepcopy(conversation)

    def update_conversation(self, conversation: Conversation) -> None:
        """Persist changes to a conversation's attributes."""
        with self._lock:
            self._require(conversation.id)
            conversation.updated_at = time.time()
            self._conversations[conversation.id] = copy.deepcopy(conversation)

    def list_conversations(
        self,
        status: ConversationStatus | None = None,
        owner_id: str | None = None,
    ) -> list[Conversation]:
        """List conversations, oldest first."""
        with self._lock:
            conversations = [copy.deepcopy(c) for c in self._conversations.values()]
        if status is not None:
            conversations = [c for c in conversations if c.status == status]
        if owner_id is not None:
            conversations = [c for c in conversations if c.owner_id == owner_id]
        return sorted(conversations, key=lambda c: c.created_at)

    def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation ordered by sequence."""
        with self._lock:
            self._require(conversation_id)
            return [copy.deepcopy(t) for t in self._turns[conversation_id]]

    def append_turns(self, conversation_id: str, turns: Iterable[Turn]) -> list[Turn]:
        """Append turns atomically, assigning consecutive sequence numbers."""
        with self._lock:
            self._require(conversation_id)
            stored: list[Turn] = []
            counter = self._counters[conversation_id]
            for turn in turns:
                counter += 1
                saved = copy.deepcopy(turn)
                saved.conversation_id = conversation_id
                saved.sequence = counter
                stored.append(saved)
            self._turns[conversation_id].extend(stored)
            self._counters[conversation_id] = counter
            return [copy.deepcopy(t) for t in stored]

    def delete_turns(self, conversation_id: str, sequences: Iterable[int]) -> int:
        """Delete specific turns."""
        doomed = set(sequences)
        with self._lock:
            self._require(conversation_id)
            before = len(self._turns[conversation_id])
            self._turns[conversation_id] = [
                t for t in self._turns[conversation_id] if t.sequence not in doomed
            ]
            return before - len(self._turns[conversation_id])

    def delete_turns_after(self, conversation_id: str, sequence: int) -> int:
        """Delete every turn with a sequence greater than `sequence`."""
        with self._lock:
            self._require(conversation_id)
            before = len(self._turns[conversation_id])
            self._turns[conversation_id] = [
                t for t in self._turns[conversation_id] if t.sequence <= sequence
            ]
            return before - len(self._turns[conversation_id])

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint."""
        with self._lock:
            self._require(checkpoint.conversation_id)
            existing = self._checkpoints.setdefault(checkpoint.conversation_id, [])
            if any(c.name == checkpoint.name for c in existing):
                raise StoreError(
                    f"Checkpoint '{checkpoint.name}' already exists",
                    {"conversation_id": checkpoint.conversation_id},
                )
            existing.append(checkpoint)

    def get_checkpoint(self, conversation_id: str, name: str) -> Checkpoint | None:
        """Get a checkpoint by name."""
        with self._lock:
            for checkpoint in self._checkpoints.get(conversation_id, []):
                if checkpoint.name == name:
                    return checkpoint
        return None

    def list_checkpoints(self, conversation_id: str, limit: int | None = None) -> list[Checkpoint]:
        """Checkpoints of a conversation, newest first."""
        with self._lock:
            checkpoints = list(reversed(self._checkpoints.get(conversation_id, [])))
        # Stable sort keeps insertion order for equal timestamps
        checkpoints.sort(key=lambda c: c.created_at, reverse=True)
        return checkpoints if limit is None else checkpoints[:limit]

    def delete_checkpoint(self, conversation_id: str, name: str) -> bool:
        """Delete a checkpoint."""
        with self._lock:
            existing = self._checkpoints.get(conversation_id, [])
            kept = [c for c in existing if c.name != name]
            self._checkpoints[conversation_id] = kept
            return len(kept) != len(existing)

    def delete_checkpoints_before(self, cutoff: float) -> int:
        """Delete checkpoints created before `cutoff`."""
        deleted = 0
        with self._lock:
            for conversation_id, existing in self._checkpoints.items():
                kept = [c for c in existing if c.created_at >= cutoff]
                deleted += len(existing) - len(kept)
                self._checkpoints[conversation_id] = kept
        return deleted

    def save_recovery_context(self, context: RecoveryContext) -> None:
        """Insert or replace a recovery context."""
        with self._lock:
            self._recovery[context.id] = copy.deepcopy(context)

    def get_recovery_context(
        self, owner_id: str, conversation_id: str, now: float | None = None
    ) -> RecoveryContext | None:
        """Most recent unexpired recovery context."""
        now = time.time() if now is None else now
        with self._lock:
            candidates = [
                c
                for c in self._recovery.values()
                if c.owner_id == owner_id
                and c.conversation_id == conversation_id
                and not c.is_expired(now)
            ]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda c: c.created_at))

    def delete_recovery_contexts(self, conversation_id: str) -> int:
        """Delete all recovery contexts of a conversation."""
        with self._lock:
            doomed = [k for k, c in self._recovery.items() if c.conversation_id == conversation_id]
            for key in doomed:
                del self._recovery[key]
        return len(doomed)

    def delete_expired_recovery_contexts(self, now: float | None = None) -> int:
        """Delete expired recovery contexts."""
        now = time.time() if now is None else now
        with self._lock:
            doomed = [k for k, c in self._recovery.items() if c.is_expired(now)]
            for key in doomed:
                del self._recovery[key]
        return len(doomed)

    def count_active_recovery_contexts(self, now: float | None = None) -> int:
        """Number of unexpired recovery contexts."""
        now = time.time() if now is None else now
        with self._lock:
            return sum(1 for c in self._recovery.values() if not c.is_expired(now))

    def _require(self, conversation_id: str) -> None:
        if conversation_id not in self._conversations:
            raise ConversationNotFoundError(conversation_id)


class SQLiteTurnStore(TurnStore):
    """SQLite implementation for persistence."""

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize SQLite store.

        Args:
            db_path: Path to database file (":memory:" for a private database)
        """
        self._db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection."""
        if self._conn is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                lifecycle TEXT NOT NULL,
                status TEXT NOT NULL,
                last_stable_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                parent_id TEXT,
                branch_point INTEGER,
                metadata TEXT NOT NULL,
                next_sequence INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS turns (
                conversation_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT,
                tool_invocations TEXT NOT NULL,
                tool_call_id TEXT,
                created_at REAL NOT NULL,
                metadata TEXT NOT NULL,
                PRIMARY KEY (conversation_id, sequence),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
            );

            CREATE TABLE IF NOT EXISTS checkpoints (
                conversation_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at REAL NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (conversation_id, name)
            );

            CREATE TABLE IF NOT EXISTS recovery_contexts (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                payload TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_status ON conversations(status);
            CREATE INDEX IF NOT EXISTS idx_checkpoints_created ON checkpoints(created_at);
            CREATE INDEX IF NOT EXISTS idx_recovery_lookup
                ON recovery_contexts(owner_id, conversation_id);
            CREATE INDEX IF NOT EXISTS idx_recovery_expires ON recovery_contexts(expires_at);
        """
        )
        conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                conn = self._get_conn()
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor
        except sqlite3.Error as e:
            raise StoreError(f"SQLite operation failed: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                return self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"SQLite query failed: {e}") from e

    def create_conversation(
        self,
        owner_id: str,
        title: str = "",
        parent_id: str | None = None,
        branch_point: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """Create a new conversation in the stable state."""
        conversation = Conversation(
            owner_id=owner_id,
            title=title,
            parent_id=parent_id,
            branch_point=branch_point,
            last_stable_at=time.time(),
            metadata=dict(metadata or {}),
        )
        self._execute(
            """
            INSERT INTO conversations (id, owner_id, title, lifecycle, status, last_stable_at,
                created_at, updated_at, parent_id, branch_point, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conversation.id,
                conversation.owner_id,
                conversation.title,
                conversation.lifecycle.value,
                conversation.status.value,
                conversation.last_stable_at,
                conversation.created_at,
                conversation.updated_at,
                conversation.parent_id,
                conversation.branch_point,
                json.dumps(conversation.metadata),
            ),
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Get a conversation by ID."""
        rows = self._query("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if not rows:
            raise ConversationNotFoundError(conversation_id)
        return self._row_to_conversation(rows[0])

    def update_conversation(self, conversation: Conversation) -> None:
        """Persist changes to a conversation's attributes."""
        conversation.updated_at = time.time()
        cursor = self._execute(
            """
            UPDATE conversations SET owner_id = ?, title = ?, lifecycle = ?, status = ?,
                last_stable_at = ?, updated_at = ?, parent_id = ?, branch_point = ?, metadata = ?
            WHERE id = ?
            """,
            (
                conversation.owner_id,
                conversation.title,
                conversation.lifecycle.value,
                conversation.status.value,
                conversation.last_stable_at,
                conversation.updated_at,
                conversation.parent_id,
                conversation.branch_point,
                json.dumps(conversation.metadata),
                conversation.id,
            ),
        )
        if cursor.rowcount == 0:
            raise ConversationNotFoundError(conversation.id)

    def list_conversations(
        self,
        status: ConversationStatus | None = None,
        owner_id: str | None = None,
    ) -> list[Conversation]:
        """List conversations, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT * FROM conversations {where} ORDER BY created_at, rowid", tuple(params)
        )
        return [self._row_to_conversation(row) for row in rows]

    def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation ordered by sequence."""
        self._require(conversation_id)
        rows = self._query(
            "SELECT * FROM turns WHERE conversation_id = ? ORDER BY sequence",
            (conversation_id,),
        )
        return [self._row_to_turn(row) for row in rows]

    def append_turns(self, conversation_id: str, turns: Iterable[Turn]) -> list[Turn]:
        """Append turns atomically, assigning consecutive sequence numbers."""
        pending = [copy.deepcopy(t) for t in turns]
        try:
            with self._lock:
                conn = self._get_conn()
                with conn:
                    row = conn.execute(
                        "SELECT next_sequence FROM conversations WHERE id = ?",
                        (conversation_id,),
                    ).fetchone()
                    if row is None:
                        raise ConversationNotFoundError(conversation_id)
                    counter = row["next_sequence"]
                    for turn in pending:
                        counter += 1
                        turn.conversation_id = conversation_id
                        turn.sequence = counter
                        conn.execute(
                            """
                            INSERT INTO turns (conversation_id, sequence, role, content,
                                tool_invocations, tool_call_id, created_at, metadata)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            (
                                conversation_id,
                                turn.sequence,
                                turn.role.value,
                                turn.content,
                                json.dumps([inv.to_wire() for inv in turn.tool_invocations]),
                                turn.tool_call_id,
                                turn.created_at,
                                json.dumps(turn.metadata),
                            ),
                        )
                    conn.execute(
                        "UPDATE conversations SET next_sequence = ?, updated_at = ? WHERE id = ?",
                        (counter, time.time(), conversation_id),
                    )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to append turns to {conversation_id}: {e}") from e
        return pending

    def delete_turns(self, conversation_id: str, sequences: Iterable[int]) -> int:
        """Delete specific turns."""
        self._require(conversation_id)
        doomed = sorted(set(sequences))
        if not doomed:
            return 0
        placeholders = ",".join("?" for _ in doomed)
        cursor = self._execute(
            f"DELETE FROM turns WHERE conversation_id = ? AND sequence IN ({placeholders})",
            (conversation_id, *doomed),
        )
        return cursor.rowcount

    def delete_turns_after(self, conversation_id: str, sequence: int) -> int:
        """Delete every turn with a sequence greater than `sequence`."""
        self._require(conversation_id)
        cursor = self._execute(
            "DELETE FROM turns WHERE conversation_id = ? AND sequence > ?",
            (conversation_id, sequence),
        )
        return cursor.rowcount

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint."""
        self._require(checkpoint.conversation_id)
        try:
            self._execute(
                "INSERT INTO checkpoints (conversation_id, name, created_at, payload) "
                "VALUES (?, ?, ?, ?)",
                (
                    checkpoint.conversation_id,
                    checkpoint.name,
                    checkpoint.created_at,
                    json.dumps(checkpoint.to_dict()),
                ),
            )
        except StoreError as e:
            raise StoreError(
                f"Checkpoint '{checkpoint.name}' already exists or could not be saved",
                {"conversation_id": checkpoint.conversation_id},
            ) from e

    def get_checkpoint(self, conversation_id: str, name: str) -> Checkpoint | None:
        """Get a checkpoint by name."""
        rows = self._query(
            "SELECT payload FROM checkpoints WHERE conversation_id = ? AND name = ?",
            (conversation_id, name),
        )
        return Checkpoint.from_dict(json.loads(rows[0]["payload"])) if rows else None

    def list_checkpoints(self, conversation_id: str, limit: int | None = None) -> list[Checkpoint]:
        """Checkpoints of a conversation, newest first."""
        sql = (
            "SELECT payload FROM checkpoints WHERE conversation_id = ? "
            "ORDER BY created_at DESC, rowid DESC"
        )
        params: tuple = (conversation_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (conversation_id, limit)
        rows = self._query(sql, params)
        return [Checkpoint.from_dict(json.loads(row["payload"])) for row in rows]

    def delete_checkpoint(self, conversation_id: str, name: str) -> bool:
        """Delete a checkpoint."""
        cursor = self._execute(
            "DELETE FROM checkpoints WHERE conversation_id = ? AND name = ?",
            (conversation_id, name),
        )
        return cursor.rowcount > 0

    def delete_checkpoints_before(self, cutoff: float) -> int:
        """Delete checkpoints created before `cutoff`."""
        return self._execute("DELETE FROM checkpoints WHERE created_at < ?", (cutoff,)).rowcount

    def save_recovery_context(self, context: RecoveryContext) -> None:
        """Insert or replace a recovery context."""
        self._execute(
            """
            INSERT OR REPLACE INTO recovery_contexts
                (id, owner_id, conversation_id, created_at, expires_at, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                context.id,
                context.owner_id,
                context.conversation_id,
                context.created_at,
                context.expires_at,
                json.dumps(context.to_dict()),
            ),
        )

    def get_recovery_context(
        self, owner_id: str, conversation_id: str, now: float | None = None
    ) -> RecoveryContext | None:
        """Most recent unexpired recovery context."""
        now = time.time() if now is None else now
        rows = self._query(
            """
            SELECT payload FROM recovery_contexts
            WHERE owner_id = ? AND conversation_id = ? AND expires_at > ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (owner_id, conversation_id, now),
        )
        return RecoveryContext.from_dict(json.loads(rows[0]["payload"])) if rows else None

    def delete_recovery_contexts(self, conversation_id: str) -> int:
        """Delete all recovery contexts of a conversation."""
        return self._execute(
            "DELETE FROM recovery_contexts WHERE conversation_id = ?", (conversation_id,)
        ).rowcount

    def delete_expired_recovery_contexts(self, now: float | None = None) -> int:
        """Delete expired recovery contexts."""
        now = time.time() if now is None else now
        return self._execute(
            "DELETE FROM recovery_contexts WHERE expires_at <= ?", (now,)
        ).rowcount

    def count_active_recovery_contexts(self, now: float | None = None) -> int:
        """Number of unexpired recovery contexts."""
        now = time.time() if now is None else now
        rows = self._query(
            "SELECT COUNT(*) AS n FROM recovery_contexts WHERE expires_at > ?", (now,)
        )
        return rows[0]["n"]

    def _require(self, conversation_id: str) -> None:
        rows = self._query("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,))
        if not rows:
            raise ConversationNotFoundError(conversation_id)

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation.from_dict(
            {
                "id": row["id"],
                "owner_id": row["owner_id"],
                "title": row["title"],
                "lifecycle": row["lifecycle"],
                "status": row["status"],
                "last_stable_at": row["last_stable_at"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "parent_id": row["parent_id"],
                "branch_point": row["branch_point"],
                "metadata": json.loads(row["metadata"]),
            }
        )

    @staticmethod
    def _row_to_turn(row: sqlite3.Row) -> Turn:
        return Turn(
            role=Role(row["role"]),
            content=row["content"],
            tool_invocations=tuple(
                ToolInvocation.from_wire(inv) for inv in json.loads(row["tool_invocations"])
            ),
            tool_call_id=row["tool_call_id"],
            conversation_id=row["conversation_id"],
            sequence=row["sequence"],
            created_at=row["created_at"],
            metadata=json.loads(row["metadata"]),
        )


def create_store(config: StoreConfig) -> TurnStore:
    """
    Create a turn store from configuration.

    Args:
        config: Store configuration

    Returns:
        TurnStore instance
    """
    if config.backend == "sqlite":
        if config.path is None:
            raise ValueError("SQLite store requires a path")
        return SQLiteTurnStore(db_path=config.path)
    elif config.backend == "inmemory":
        return InMemoryTurnStore()
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")


__all__ = [
    "InMemoryTurnStore",
    "SQLiteTurnStore",
    "TurnStore",
    "create_store",
]
