"""
Property-based tests for conversation sequence integrity.

Covers repair, the longest valid prefix, recovery branches and checkpoint
restore over generated histories.
"""

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from convguard.branching import BranchManager
from convguard.checkpoints import CheckpointManager
from convguard.repair import SequenceRepairer
from convguard.tool_ids import OPENAI_ID_POLICY
from convguard.turn_store import InMemoryTurnStore
from convguard.types import Role, ToolInvocation, Turn
from convguard.validator import IntegrityValidator, longest_valid_prefix, validate_turns

NOW = 1_700_000_000.0
ID_POOL = ["call_a", "call_b", "call_c"]


# =============================================================================
# Strategies
# =============================================================================


def make_turn(role, content=None, call_ids=(), tool_call_id=None):
    return Turn(
        role=role,
        content=content,
        tool_invocations=tuple(ToolInvocation(i, "lookup") for i in call_ids),
        tool_call_id=tool_call_id,
        created_at=NOW,
    )


text_strategy = st.text(alphabet="abcxyz ", min_size=1, max_size=8)

# Arbitrary, usually broken histories
arbitrary_turn = st.one_of(
    text_strategy.map(lambda c: make_turn(Role.USER, c)),
    text_strategy.map(lambda c: make_turn(Role.ASSISTANT, c)),
    st.lists(st.sampled_from(ID_POOL), min_size=1, max_size=3).map(
        lambda ids: make_turn(Role.ASSISTANT, call_ids=ids)
    ),
    st.sampled_from(ID_POOL + [None, "bad id", "toolu_1"]).map(
        lambda ref: make_turn(Role.TOOL, "ok", tool_call_id=ref)
    ),
)
arbitrary_history = st.lists(arbitrary_turn, max_size=12)


@st.composite
def valid_history(draw, min_size=0):
    """Complete exchanges only, tool answers in any order."""
    blocks = draw(
        st.lists(
            st.one_of(st.just("user"), st.just("text"), st.integers(min_value=1, max_value=3)),
            min_size=min_size,
            max_size=6,
        )
    )
    history = []
    counter = 0
    for block in blocks:
        if block == "user":
            history.append(make_turn(Role.USER, draw(text_strategy)))
        elif block == "text":
            history.append(make_turn(Role.ASSISTANT, draw(text_strategy)))
        else:
            ids = [f"call_{counter + n}" for n in range(block)]
            counter += block
            history.append(make_turn(Role.ASSISTANT, call_ids=ids))
            for ref in draw(st.permutations(ids)):
                history.append(make_turn(Role.TOOL, "ok", tool_call_id=ref))
    return history


def build(history):
    """Store, validator and a conversation seeded with the history."""
    store = InMemoryTurnStore()
    validator = IntegrityValidator(store, clock=lambda: NOW)
    conversation = store.create_conversation("user-1", title="Generated")
    if history:
        store.append_turns(conversation.id, history)
    return store, validator, conversation.id


def shape(turns):
    return [(t.role, t.content, t.invocation_ids, t.tool_call_id) for t in turns]


# =============================================================================
# Repair
# =============================================================================


@pytest.mark.hypothesis
class TestRepairProperties:
    """Property tests for in-place repair."""

    @given(history=arbitrary_history)
    @settings(max_examples=100)
    def test_repaired_history_validates(self, history):
        """Whatever the input, the repaired history passes full validation."""
        store, validator, conv_id = build(history)

        SequenceRepairer(store, validator, clock=lambda: NOW).repair(conv_id)

        assert validator.validate(store.list_turns(conv_id)).valid

    @given(history=arbitrary_history)
    @settings(max_examples=100)
    def test_repair_is_idempotent(self, history):
        """A second repair pass changes nothing."""
        store, validator, conv_id = build(history)
        repairer = SequenceRepairer(store, validator, clock=lambda: NOW)
        repairer.repair(conv_id)
        after_first = shape(store.list_turns(conv_id))

        report = repairer.repair(conv_id)

        assert not report.changed
        assert shape(store.list_turns(conv_id)) == after_first

    @given(history=valid_history())
    def test_valid_history_untouched(self, history):
        """Repair never removes turns from a valid history."""
        store, validator, conv_id = build(history)

        report = SequenceRepairer(store, validator, clock=lambda: NOW).repair(conv_id)

        assert not report.changed
        assert report.incomplete_exchanges == []
        assert shape(store.list_turns(conv_id)) == shape(history)

    @given(history=arbitrary_history)
    def test_repair_keeps_order(self, history):
        """Surviving turns keep their relative order."""
        store, validator, conv_id = build(history)
        before = [t.sequence for t in store.list_turns(conv_id)]

        SequenceRepairer(store, validator, clock=lambda: NOW).repair(conv_id)

        after = [t.sequence for t in store.list_turns(conv_id)]
        assert after == [s for s in before if s in set(after)]

    @given(history=valid_history(min_size=1), data=st.data())
    def test_stray_answer_removed_alone(self, history, data):
        """A tool turn re-answering a closed invocation is the only turn removed."""
        slots = []
        answered = []
        for index, turn in enumerate(history):
            if turn.role != Role.TOOL and answered:
                slots.append((index, list(answered)))
            if turn.role == Role.TOOL:
                answered.append(turn.tool_call_id)
        if answered:
            slots.append((len(history), answered))
        assume(slots)
        index, closed = data.draw(st.sampled_from(slots))
        stray = make_turn(Role.TOOL, "stray", tool_call_id=data.draw(st.sampled_from(closed)))
        store, validator, conv_id = build(history[:index] + [stray] + history[index:])

        report = SequenceRepairer(store, validator, clock=lambda: NOW).repair(conv_id)

        assert report.removed_total == 1
        assert report.removed_orphans == [index + 1]
        assert shape(store.list_turns(conv_id)) == shape(history)


# =============================================================================
# Longest Valid Prefix
# =============================================================================


@pytest.mark.hypothesis
class TestPrefixProperties:
    """Property tests for the longest valid prefix."""

    @given(history=arbitrary_history)
    def test_prefix_is_valid_prefix(self, history):
        prefix = longest_valid_prefix(history, OPENAI_ID_POLICY)

        assert prefix == history[: len(prefix)]
        assert validate_turns(prefix, OPENAI_ID_POLICY).valid

    @given(history=valid_history())
    def test_valid_history_is_its_own_prefix(self, history):
        assert longest_valid_prefix(history, OPENAI_ID_POLICY) == history

    @given(history=valid_history(), tail=arbitrary_history)
    def test_valid_head_survives_any_tail(self, history, tail):
        """Appending turns never shortens the prefix below the valid head."""
        prefix = longest_valid_prefix(history + tail, OPENAI_ID_POLICY)

        assert len(prefix) >= len(history)


# =============================================================================
# Recovery Branches
# =============================================================================


@pytest.mark.hypothesis
class TestBranchProperties:
    """Property tests for recovery branches."""

    @given(history=arbitrary_history)
    def test_branch_is_prefix_of_original(self, history):
        store, validator, conv_id = build(history)
        branches = BranchManager(store, validator, clock=lambda: NOW)

        branch = branches.create_recovery_branch(conv_id)

        copied = store.list_turns(branch.id)
        assert shape(copied) == shape(history[: len(copied)])
        assert branch.branch_point == len(copied)
        assert validator.validate(copied).valid


# =============================================================================
# Checkpoints
# =============================================================================


@pytest.mark.hypothesis
class TestCheckpointProperties:
    """Property tests for checkpoint restore."""

    @given(history=valid_history(min_size=1), later=valid_history())
    def test_restore_returns_to_snapshot(self, history, later):
        """Restoring discards exactly the turns added after the snapshot."""
        store, validator, conv_id = build(history)
        manager = CheckpointManager(store, validator, clock=lambda: NOW)
        manager.create(conv_id, "snapshot")
        if later:
            store.append_turns(conv_id, later)

        manager.restore(conv_id, "snapshot")

        assert shape(store.list_turns(conv_id)) == shape(history)
