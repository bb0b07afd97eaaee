"""
Core data model for conversation integrity tracking.

Defines conversations, turns and tool invocations, plus the wire format
exchanged with remote completion clients.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Role of a turn in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class LifecycleState(str, Enum):
    """Structural health of a conversation."""

    STABLE = "stable"
    NEEDS_CLEANUP = "needs_cleanup"
    ERROR = "error"


class ConversationStatus(str, Enum):
    """Whether a conversation is still in use."""

    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass(frozen=True)
class ToolInvocation:
    """A request from the remote model to run a named capability."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the wire format."""
        return {"id": self.id, "capability_name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolInvocation:
        """Create from the wire format."""
        return cls(
            id=data["id"],
            name=data.get("capability_name") or data.get("name", ""),
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass
class Turn:
    """
    One role-tagged entry in a conversation's ordered history.

    `sequence` is assigned by the store and is strictly increasing within a
    conversation. Unsaved turns carry sequence 0.
    """

    role: Role
    content: str | None = None
    tool_invocations: tuple[ToolInvocation, ...] = ()
    tool_call_id: str | None = None
    conversation_id: str = ""
    sequence: int = 0
    created_at: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        self.tool_invocations = tuple(self.tool_invocations)
        if self.tool_invocations and self.role != Role.ASSISTANT:
            raise ValueError("Only assistant turns may carry tool invocations")
        if self.tool_call_id is not None and self.role != Role.TOOL:
            raise ValueError("Only tool turns may carry a tool_call_id")

    @property
    def invocation_ids(self) -> list[str]:
        """Ids of the tool invocations on this turn."""
        return [inv.id for inv in self.tool_invocations]

    @property
    def has_invocations(self) -> bool:
        return bool(self.tool_invocations)

    def copy_for(self, conversation_id: str, **changes: Any) -> Turn:
        """Unsaved copy of this turn destined for another conversation."""
        return replace(
            self,
            conversation_id=conversation_id,
            sequence=0,
            metadata={**self.metadata, **changes.pop("metadata", {})},
            **changes,
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the wire format sent to completion clients."""
        if self.role == Role.TOOL:
            return {
                "role": self.role.value,
                "tool_call_id": self.tool_call_id,
                "content": self.content or "",
            }

        message: dict[str, Any] = {"role": self.role.value, "content": self.content or ""}
        if self.tool_invocations:
            message["tool_calls"] = [inv.to_wire() for inv in self.tool_invocations]
        return message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "role": self.role.value,
            "content": self.content,
            "tool_invocations": [inv.to_wire() for inv in self.tool_invocations],
            "tool_call_id": self.tool_call_id,
            "conversation_id": self.conversation_id,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        """Create from dictionary."""
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            tool_invocations=tuple(
                ToolInvocation.from_wire(inv) for inv in data.get("tool_invocations") or []
            ),
            tool_call_id=data.get("tool_call_id"),
            conversation_id=data.get("conversation_id", ""),
            sequence=data.get("sequence", 0),
            created_at=data.get("created_at", time.time()),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Conversation:
    """A conversation owned by one user."""

    owner_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = ""
    lifecycle: LifecycleState = LifecycleState.STABLE
    status: ConversationStatus = ConversationStatus.ACTIVE
    last_stable_at: float | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    parent_id: str | None = None
    branch_point: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_archived(self) -> bool:
        return self.status == ConversationStatus.ARCHIVED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "lifecycle": self.lifecycle.value,
            "status": self.status.value,
            "last_stable_at": self.last_stable_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "parent_id": self.parent_id,
            "branch_point": self.branch_point,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            title=data.get("title", ""),
            lifecycle=LifecycleState(data.get("lifecycle", LifecycleState.STABLE.value)),
            status=ConversationStatus(data.get("status", ConversationStatus.ACTIVE.value)),
            last_stable_at=data.get("last_stable_at"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            parent_id=data.get("parent_id"),
            branch_point=data.get("branch_point"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of a conversation's turn sequence."""

    conversation_id: str
    name: str
    created_at: float
    turn_count: int
    tool_call_count: int
    lifecycle_state: LifecycleState
    last_sequence: int
    turns_snapshot: tuple[dict[str, Any], ...] = ()
    context_summary: dict[str, Any] = field(default_factory=dict)

    def turns(self) -> list[Turn]:
        """Rebuild the snapshotted turns."""
        return [Turn.from_dict(data) for data in self.turns_snapshot]

    def summary(self) -> dict[str, Any]:
        """Short description for listings."""
        return {
            "name": self.name,
            "created_at": self.created_at,
            "turn_count": self.turn_count,
            "context": self.context_summary,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted checkpoint shape."""
        return {
            "conversation_id": self.conversation_id,
            "name": self.name,
            "created_at": self.created_at,
            "turn_count": self.turn_count,
            "tool_call_count": self.tool_call_count,
            "lifecycle_state": self.lifecycle_state.value,
            "last_sequence": self.last_sequence,
            "turns_snapshot": list(self.turns_snapshot),
            "context_summary": self.context_summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Create from the persisted checkpoint shape."""
        return cls(
            conversation_id=data["conversation_id"],
            name=data["name"],
            created_at=data["created_at"],
            turn_count=data["turn_count"],
            tool_call_count=data["tool_call_count"],
            lifecycle_state=LifecycleState(data["lifecycle_state"]),
            last_sequence=data["last_sequence"],
            turns_snapshot=tuple(data.get("turns_snapshot") or ()),
            context_summary=dict(data.get("context_summary") or {}),
        )


@dataclass
class RecoveryContext:
    """
    Bookkeeping for an in-flight recovery.

    Correlates an owner and a conversation with per-category attempt counts.
    Expires after a fixed lifetime and is discarded after a successful call.
    """

    owner_id: str
    conversation_id: str
    expires_at: float
    attempts: dict[str, int] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "conversation_id": self.conversation_id,
            "expires_at": self.expires_at,
            "attempts": dict(self.attempts),
            "data": self.data,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryContext:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            conversation_id=data["conversation_id"],
            expires_at=data["expires_at"],
            attempts={k: int(v) for k, v in (data.get("attempts") or {}).items()},
            data=dict(data.get("data") or {}),
            created_at=data.get("created_at", time.time()),
        )


def count_invocations(turns: list[Turn]) -> int:
    """Total number of tool invocations across turns."""
    return sum(len(turn.tool_invocations) for turn in turns)


def to_wire_messages(turns: list[Turn]) -> list[dict[str, Any]]:
    """Build the wire message list for a turn sequence."""
    return [turn.to_wire() for turn in turns]


__all__ = [
    "Checkpoint",
    "Conversation",
    "ConversationStatus",
    "LifecycleState",
    "RecoveryContext",
    "Role",
    "ToolInvocation",
    "Turn",
    "count_invocations",
    "to_wire_messages",
]
