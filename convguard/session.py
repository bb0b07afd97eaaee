"""
Conversation session driving one user message through the engine.

The session appends the user turn, checks integrity, calls the resilient
client and commits the reply. A tool-call reply is executed first and the
assistant turn is appended together with its tool turns in one store call,
so an abandoned call never leaves a partial exchange behind.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AsyncExitStack
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from .api_client import CompletionResult, ToolSpec
from .config import GuardConfig
from .errors import ConvGuardError, IntegrityError
from .locks import ConversationLocks
from .recovery import RecoveryAction, RecoverySignal
from .resilient_client import ResilientCompletionClient
from .turn_store import TurnStore
from .types import Role, ToolInvocation, Turn, to_wire_messages
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[ToolInvocation], Awaitable[str]]

TOOL_UNAVAILABLE = "tool execution unavailable"
_REQUEST_KEY = "request_id"
_MAX_CONVERSATION_RETRIES = 3


class SessionError(ConvGuardError):
    """The session cannot accept a message for this conversation."""


@dataclass
class SendResult:
    """Outcome of sending one user message."""

    conversation_id: str
    reply: str | None = None
    signal: RecoverySignal | None = None
    tool_rounds: int = 0
    original_conversation_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.reply is not None

    @property
    def switched_conversation(self) -> bool:
        return (
            self.original_conversation_id is not None
            and self.original_conversation_id != self.conversation_id
        )


class ConversationSession:
    """
    Serialized send flow over a store, validator and resilient client.

    Example:
        session = ConversationSession(store, validator, resilient, locks)
        result = await session.send(conversation_id, "Create a grocery list")
        if not result.ok:
            show(result.signal.user_message)
    """

    def __init__(
        self,
        store: TurnStore,
        validator: IntegrityValidator,
        resilient: ResilientCompletionClient,
        locks: ConversationLocks | None = None,
        tools: Sequence[ToolSpec] = (),
        tool_executor: ToolExecutor | None = None,
        config: GuardConfig | None = None,
    ) -> None:
        """
        Initialize session.

        Args:
            store: Turn store
            validator: Integrity validator
            resilient: Resilient completion client
            locks: Shared per-conversation locks
            tools: Tool catalog offered to the model
            tool_executor: Coroutine running one invocation and returning its output
            config: Configuration (tool round limit)
        """
        self.store = store
        self.validator = validator
        self.resilient = resilient
        self.locks = locks or ConversationLocks()
        self.tools = tuple(tools)
        self.tool_executor = tool_executor
        self.config = config or GuardConfig()

    async def send(self, conversation_id: str, content: str) -> SendResult:
        """
        Send a user message and wait for the reply.

        Args:
            conversation_id: Conversation to continue
            content: User message text

        Returns:
            SendResult with the reply, or the recovery signal to show the user

        Raises:
            SessionError: If the conversation is archived
            ConversationNotFoundError: If the conversation does not exist
        """
        async with self.locks.async_lock(conversation_id), AsyncExitStack() as branch_locks:
            request_id = uuid.uuid4().hex
            with self.locks.sync_lock(conversation_id):
                conversation = self.store.get_conversation(conversation_id)
                if conversation.is_archived:
                    raise SessionError(
                        f"Conversation {conversation_id} is archived",
                        {"conversation_id": conversation_id},
                    )
                self.store.append_turn(
                    conversation_id,
                    Turn(role=Role.USER, content=content, metadata={_REQUEST_KEY: request_id}),
                )

            result = await self._drive(
                conversation_id, conversation.owner_id, content, request_id, branch_locks
            )
            result.original_conversation_id = conversation_id
            return result

    async def _drive(
        self,
        conversation_id: str,
        owner_id: str,
        content: str,
        request_id: str,
        branch_locks: AsyncExitStack,
    ) -> SendResult:
        current = conversation_id
        rounds = 0
        conversation_retries = 0

        while True:
            try:
                self.validator.ensure_integrity(current)
            except IntegrityError as e:
                signal = self.resilient.orchestrator.recover(e, current, owner_id, content)
            else:
                with self.locks.sync_lock(current):
                    turns = self.store.list_turns(current)
                outcome = await self.resilient.complete(
                    current, owner_id, to_wire_messages(turns), self.tools, content
                )
                if outcome.ok:
                    result = outcome.result
                    if result.is_tool_call and rounds < self.config.retry.max_tool_rounds:
                        await self._commit_tool_round(current, result)
                        rounds += 1
                        continue
                    if result.is_tool_call:
                        logger.warning(
                            "Conversation %s reached %d tool rounds, dropping further calls",
                            current,
                            rounds,
                        )
                    with self.locks.sync_lock(current):
                        self.store.append_turn(
                            current, Turn(role=Role.ASSISTANT, content=result.text)
                        )
                    return SendResult(current, reply=result.text, tool_rounds=rounds)
                signal = outcome.signal

            if conversation_retries >= _MAX_CONVERSATION_RETRIES:
                return SendResult(current, signal=signal, tool_rounds=rounds)

            if signal.action == RecoveryAction.RETRY_SAME_CONVERSATION:
                logger.info("Retrying conversation %s after repair", current)
            elif signal.action == RecoveryAction.RETRY_NEW_CONVERSATION and signal.new_conversation:
                logger.info(
                    "Continuing conversation %s on branch %s", current, signal.new_conversation
                )
                current = signal.new_conversation
                await branch_locks.enter_async_context(self.locks.async_lock(current))
            else:
                return SendResult(current, signal=signal, tool_rounds=rounds)

            conversation_retries += 1
            self._ensure_user_turn(current, content, request_id)

    async def _commit_tool_round(self, conversation_id: str, result: CompletionResult) -> None:
        """Execute invocations, then append the assistant turn and its tool turns together."""
        tool_turns = []
        for invocation in result.tool_invocations:
            output = await self._execute(invocation)
            tool_turns.append(Turn(role=Role.TOOL, tool_call_id=invocation.id, content=output))

        assistant = Turn(
            role=Role.ASSISTANT,
            content=result.text or None,
            tool_invocations=result.tool_invocations,
        )
        with self.locks.sync_lock(conversation_id):
            self.store.append_turns(conversation_id, [assistant, *tool_turns])

    async def _execute(self, invocation: ToolInvocation) -> str:
        if self.tool_executor is None:
            return TOOL_UNAVAILABLE
        try:
            return await self.tool_executor(invocation)
        except Exception as e:
            logger.error("Tool %s (%s) failed: %s", invocation.name, invocation.id, e)
            return f"tool execution failed: {e}"

    def _ensure_user_turn(self, conversation_id: str, content: str, request_id: str) -> None:
        """Re-append the pending user turn if repair or branching dropped it."""
        with self.locks.sync_lock(conversation_id):
            turns = self.store.list_turns(conversation_id)
            if any(t.metadata.get(_REQUEST_KEY) == request_id for t in turns):
                return
            self.store.append_turn(
                conversation_id,
                Turn(role=Role.USER, content=content, metadata={_REQUEST_KEY: request_id}),
            )


__all__ = [
    "ConversationSession",
    "SendResult",
    "SessionError",
    "TOOL_UNAVAILABLE",
    "ToolExecutor",
]
