"""
Tests for the conversation session send flow.
"""

import random
from unittest.mock import patch

import pytest

from convguard.api_client import CompletionClient, CompletionResult, ToolSpec
from convguard.branching import BranchManager
from convguard.circuit_breaker import CircuitBreaker
from convguard.classifier import ErrorClassifier
from convguard.config import GuardConfig
from convguard.errors import ConversationNotFoundError, RepairError
from convguard.recovery import RecoveryAction, RecoveryOrchestrator
from convguard.repair import SequenceRepairer
from convguard.resilient_client import ResilientCompletionClient
from convguard.session import TOOL_UNAVAILABLE, ConversationSession, SessionError
from convguard.types import ConversationStatus, Role, ToolInvocation
from convguard.validator import IntegrityValidator


class ScriptedClient(CompletionClient):
    """Returns or raises scripted responses in order and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def complete(self, messages, tools=()):
        self.requests.append(list(messages))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


async def no_sleep(delay):
    return None


def tool_call(call_id="call_1", text=""):
    return CompletionResult(
        text=text, tool_invocations=(ToolInvocation(call_id, "lookup", {"q": "milk"}),)
    )


@pytest.fixture
def validator(memory_store, clock):
    return IntegrityValidator(memory_store, clock=clock)


@pytest.fixture
def conversation(memory_store):
    return memory_store.create_conversation("user-1", title="Groceries")


@pytest.fixture
def build_session(memory_store, validator, locks, clock):
    def _build(client, **kwargs):
        config = kwargs.pop("config", GuardConfig())
        orchestrator = RecoveryOrchestrator(
            memory_store,
            ErrorClassifier(),
            SequenceRepairer(memory_store, validator, locks, clock=clock),
            BranchManager(memory_store, validator, locks, clock),
            CircuitBreaker("anthropic", clock=clock),
            config=config,
            rng=random.Random(2),
            clock=clock,
        )
        resilient = ResilientCompletionClient(
            client,
            orchestrator.breaker,
            orchestrator,
            config=config,
            validator=validator,
            sleep=no_sleep,
        )
        return ConversationSession(
            memory_store, validator, resilient, locks, config=config, **kwargs
        )

    return _build


def contents(store, conversation_id):
    return [(t.role.value, t.content) for t in store.list_turns(conversation_id)]


class TestPlainReplies:
    """Tests for text replies."""

    @pytest.mark.asyncio
    async def test_reply_appended(self, build_session, memory_store, conversation):
        session = build_session(ScriptedClient(CompletionResult(text="Hello!")))

        result = await session.send(conversation.id, "hi")

        assert result.ok
        assert result.reply == "Hello!"
        assert not result.switched_conversation
        assert contents(memory_store, conversation.id) == [
            ("user", "hi"),
            ("assistant", "Hello!"),
        ]
        assert "request_id" in memory_store.list_turns(conversation.id)[0].metadata

    @pytest.mark.asyncio
    async def test_history_sent_on_second_message(self, build_session, conversation):
        client = ScriptedClient(CompletionResult(text="one"), CompletionResult(text="two"))
        session = build_session(client)

        await session.send(conversation.id, "first")
        await session.send(conversation.id, "second")

        assert [m["content"] for m in client.requests[1]] == ["first", "one", "second"]

    @pytest.mark.asyncio
    async def test_archived_conversation_rejected(self, build_session, memory_store, conversation):
        conversation.status = ConversationStatus.ARCHIVED
        memory_store.update_conversation(conversation)
        session = build_session(ScriptedClient(CompletionResult(text="x")))

        with pytest.raises(SessionError, match="archived"):
            await session.send(conversation.id, "hi")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, build_session):
        session = build_session(ScriptedClient(CompletionResult(text="x")))

        with pytest.raises(ConversationNotFoundError):
            await session.send("nope", "hi")

    @pytest.mark.asyncio
    async def test_failure_returns_signal(self, build_session, memory_store, conversation):
        session = build_session(ScriptedClient(RuntimeError("401 Unauthorized")))

        result = await session.send(conversation.id, "hi")

        assert not result.ok
        assert result.signal.action == RecoveryAction.REAUTHENTICATE
        assert contents(memory_store, conversation.id) == [("user", "hi")]


class TestToolRounds:
    """Tests for tool-call replies."""

    @pytest.mark.asyncio
    async def test_tool_round_committed_with_results(
        self, build_session, memory_store, conversation
    ):
        executed = []

        async def executor(invocation):
            executed.append(invocation.name)
            return "2 litres"

        client = ScriptedClient(tool_call(), CompletionResult(text="Buy 2 litres."))
        session = build_session(client, tools=[ToolSpec("lookup")], tool_executor=executor)

        result = await session.send(conversation.id, "how much milk?")

        assert result.reply == "Buy 2 litres."
        assert result.tool_rounds == 1
        assert executed == ["lookup"]
        stored = memory_store.list_turns(conversation.id)
        assert [t.role for t in stored] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert stored[1].invocation_ids == ["call_1"]
        assert stored[2].tool_call_id == "call_1"
        assert stored[2].content == "2 litres"
        assert client.requests[1][-1] == {
            "role": "tool",
            "tool_call_id": "call_1",
            "content": "2 litres",
        }

    @pytest.mark.asyncio
    async def test_missing_executor_answers_unavailable(
        self, build_session, memory_store, conversation
    ):
        session = build_session(ScriptedClient(tool_call(), CompletionResult(text="ok")))

        await session.send(conversation.id, "hi")

        assert memory_store.list_turns(conversation.id)[2].content == TOOL_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_executor_failure_becomes_tool_output(
        self, build_session, memory_store, conversation
    ):
        async def executor(invocation):
            raise RuntimeError("boom")

        session = build_session(
            ScriptedClient(tool_call(), CompletionResult(text="ok")), tool_executor=executor
        )

        await session.send(conversation.id, "hi")

        assert memory_store.list_turns(conversation.id)[2].content == "tool execution failed: boom"

    @pytest.mark.asyncio
    async def test_tool_round_limit(self, build_session, memory_store, validator, conversation):
        config = GuardConfig()
        config.retry.max_tool_rounds = 1
        client = ScriptedClient(tool_call("call_1"), tool_call("call_2", text="partial"))
        session = build_session(client, config=config)

        result = await session.send(conversation.id, "hi")

        assert result.reply == "partial"
        assert result.tool_rounds == 1
        assert validator.validate(memory_store.list_turns(conversation.id)).valid

    @pytest.mark.asyncio
    async def test_history_stays_valid_after_tool_rounds(
        self, build_session, memory_store, validator, conversation
    ):
        client = ScriptedClient(
            tool_call("call_1"), tool_call("call_2"), CompletionResult(text="done")
        )
        session = build_session(client)

        result = await session.send(conversation.id, "hi")

        assert result.tool_rounds == 2
        assert validator.validate(memory_store.list_turns(conversation.id)).valid


class TestCorruptedHistory:
    """Tests for recovery inside the send flow."""

    @pytest.mark.asyncio
    async def test_interrupted_exchange_repaired_before_sending(
        self, build_session, memory_store, conversation, turns
    ):
        memory_store.append_turns(
            conversation.id, [turns.user("hi"), turns.assistant("", "call_1")]
        )
        client = ScriptedClient(CompletionResult(text="Sorry, where were we?"))
        session = build_session(client)

        result = await session.send(conversation.id, "hello?")

        assert result.ok
        assert result.conversation_id == conversation.id
        assert contents(memory_store, conversation.id) == [
            ("user", "hi"),
            ("user", "hello?"),
            ("assistant", "Sorry, where were we?"),
        ]
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_unrepairable_history_continues_on_branch(
        self, build_session, memory_store, conversation, turns
    ):
        memory_store.append_turns(conversation.id, [turns.user("hi"), turns.tool("call_1")])
        session = build_session(ScriptedClient(CompletionResult(text="Fresh start")))

        with patch.object(SequenceRepairer, "repair", side_effect=RepairError("boom")):
            result = await session.send(conversation.id, "next")

        assert result.ok
        assert result.switched_conversation
        assert result.original_conversation_id == conversation.id
        assert contents(memory_store, result.conversation_id) == [
            ("user", "hi"),
            ("user", "next"),
            ("assistant", "Fresh start"),
        ]
        assert memory_store.get_conversation(conversation.id).status == ConversationStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_branch_locked_while_continuing_on_it(
        self, build_session, memory_store, locks, conversation, turns
    ):
        memory_store.append_turns(conversation.id, [turns.user("hi"), turns.tool("call_1")])
        held = {}

        class LockRecordingClient(ScriptedClient):
            async def complete(self, messages, tools=()):
                for other in memory_store.list_conversations():
                    held[other.id] = locks.async_lock(other.id).locked()
                return await super().complete(messages, tools)

        session = build_session(LockRecordingClient(CompletionResult(text="Fresh start")))

        with patch.object(SequenceRepairer, "repair", side_effect=RepairError("boom")):
            result = await session.send(conversation.id, "next")

        assert held == {conversation.id: True, result.conversation_id: True}
        assert not locks.async_lock(result.conversation_id).locked()
