"""
Tests for the sequence repairer.
"""

from unittest.mock import patch

import pytest

from convguard.errors import ConversationNotFoundError, RepairError, StoreError
from convguard.repair import RepairReport, SequenceRepairer
from convguard.types import LifecycleState


@pytest.fixture
def repairer(store, validator, locks, clock):
    return SequenceRepairer(store, validator, locks, clock=clock)


class TestRepair:
    """Tests for repair passes."""

    def test_valid_conversation_is_untouched(self, repairer, store, conversation, turns, seed):
        seed(conversation.id, turns.user(), turns.assistant("", "call_1"), turns.tool("call_1"))
        before = store.list_turns(conversation.id)

        report = repairer.repair(conversation.id)

        assert not report.changed
        assert store.list_turns(conversation.id) == before

    def test_orphan_tool_turn_removed(self, repairer, store, conversation, turns, seed):
        seed(
            conversation.id,
            turns.user("hi"),
            turns.tool("call_7"),
            turns.assistant("hello"),
        )

        report = repairer.repair(conversation.id)

        assert report.removed_orphans == [2]
        assert [t.content for t in store.list_turns(conversation.id)] == ["hi", "hello"]

    def test_malformed_reference_removed(self, repairer, store, conversation, turns, seed):
        seed(
            conversation.id,
            turns.user("hi"),
            turns.assistant("", "call_1"),
            turns.tool("call_1"),
            turns.tool("not-an-id"),
        )

        report = repairer.repair(conversation.id)

        assert report.removed_malformed == [4]
        assert len(store.list_turns(conversation.id)) == 3

    def test_duplicate_answer_removed_alone(
        self, repairer, store, validator, conversation, turns, seed
    ):
        """A second answer to an already closed invocation is the only turn removed."""
        seed(
            conversation.id,
            turns.user("hi"),
            turns.assistant("", "call_1"),
            turns.tool("call_1", "ok"),
            turns.tool("call_1", "dup"),
            turns.user("next"),
            turns.assistant("ok"),
        )

        report = repairer.repair(conversation.id)

        assert report.removed_orphans == [4]
        assert report.removed_total == 1
        remaining = store.list_turns(conversation.id)
        assert [t.content for t in remaining] == ["hi", None, "ok", "next", "ok"]
        assert validator.validate(remaining).valid

    def test_answer_to_earlier_exchange_removed_alone(
        self, repairer, store, conversation, turns, seed
    ):
        seed(
            conversation.id,
            turns.assistant("", "call_1"),
            turns.tool("call_1"),
            turns.user("more"),
            turns.tool("call_1"),
            turns.assistant("done"),
        )

        report = repairer.repair(conversation.id)

        assert report.removed_orphans == [4]
        assert report.truncated == []
        assert len(store.list_turns(conversation.id)) == 4

    def test_interrupted_exchange_flagged_and_truncated(
        self, repairer, store, conversation, turns, seed
    ):
        """A missing tool answer truncates to the last complete exchange."""
        seed(
            conversation.id,
            turns.user("hi"),
            turns.assistant("", "call_1"),
            turns.user("anyone there?"),
        )

        report = repairer.repair(conversation.id)

        assert report.incomplete_exchanges == [2]
        assert report.truncated == [2, 3]
        assert report.truncated_after == 1
        assert [t.content for t in store.list_turns(conversation.id)] == ["hi"]

    def test_truncation_to_empty(self, repairer, store, conversation, turns, seed):
        seed(conversation.id, turns.assistant("", "call_1"))

        report = repairer.repair(conversation.id)

        assert report.truncated_after == 0
        assert store.list_turns(conversation.id) == []

    def test_repair_is_idempotent(self, repairer, store, conversation, turns, seed):
        seed(
            conversation.id,
            turns.user("hi"),
            turns.tool("call_3"),
            turns.assistant("", "call_1"),
            turns.user("again"),
        )
        repairer.repair(conversation.id)
        after_first = store.list_turns(conversation.id)

        second = repairer.repair(conversation.id)

        assert not second.changed
        assert store.list_turns(conversation.id) == after_first

    def test_marks_conversation_stable(self, repairer, store, conversation, turns, seed, clock):
        conversation.lifecycle = LifecycleState.NEEDS_CLEANUP
        store.update_conversation(conversation)
        seed(conversation.id, turns.user(), turns.tool("call_1"))
        clock.advance(10)

        repairer.repair(conversation.id)
        repaired = store.get_conversation(conversation.id)

        assert repaired.lifecycle == LifecycleState.STABLE
        assert repaired.last_stable_at == clock()

    def test_repaired_conversation_validates(
        self, repairer, store, validator, conversation, turns, seed
    ):
        seed(
            conversation.id,
            turns.tool("call_1"),
            turns.user("a"),
            turns.assistant("", "call_2", "call_3"),
            turns.tool("call_3"),
            turns.user("b"),
        )

        repairer.repair(conversation.id)

        assert validator.validate(store.list_turns(conversation.id)).valid

    def test_missing_conversation(self, repairer):
        with pytest.raises(ConversationNotFoundError):
            repairer.repair("nope")

    def test_store_failure_becomes_repair_error(self, repairer, store, conversation, turns, seed):
        seed(conversation.id, turns.user(), turns.tool("call_1"))

        with patch.object(store, "delete_turns", side_effect=StoreError("disk full")):
            with pytest.raises(RepairError, match="disk full"):
                repairer.repair(conversation.id)


class TestRepairReport:
    """Tests for report accounting."""

    def test_totals(self):
        report = RepairReport("c", removed_malformed=[1], removed_orphans=[2, 3], truncated=[5])

        assert report.removed_total == 4
        assert report.changed
        assert report.to_dict()["removed_orphans"] == 2

    def test_empty_report_is_unchanged(self):
        assert not RepairReport("c").changed
