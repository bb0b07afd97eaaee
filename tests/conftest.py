"""
Pytest configuration and fixtures for convguard tests.
"""

import os
import sys
import time
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

# Add project root to path so the convguard package imports without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

# -----------------------------------------------------------------------------
# Hypothesis Profiles for Test Performance
# -----------------------------------------------------------------------------
# Usage: HYPOTHESIS_PROFILE=fast pytest tests/
#
# Profiles:
#   fast   - 10 examples, minimal phases (quick iteration)
#   dev    - 50 examples, standard phases (default for local development)
#   ci     - 100 examples, all phases, no deadline (thorough CI testing)
# -----------------------------------------------------------------------------

settings.register_profile(
    "fast",
    max_examples=10,
    phases=[Phase.generate],
    verbosity=Verbosity.quiet,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=50,
    phases=[Phase.generate, Phase.target, Phase.shrink],
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.generate, Phase.target, Phase.shrink, Phase.explain],
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))

from convguard.locks import ConversationLocks
from convguard.turn_store import InMemoryTurnStore, SQLiteTurnStore
from convguard.types import Role, ToolInvocation, Turn
from convguard.validator import IntegrityValidator


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float | None = None):
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TurnFactory:
    """Builds unsaved turns stamped with the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock

    def user(self, content: str = "hi") -> Turn:
        return Turn(role=Role.USER, content=content, created_at=self.clock())

    def system(self, content: str = "You are helpful.") -> Turn:
        return Turn(role=Role.SYSTEM, content=content, created_at=self.clock())

    def assistant(self, content: str = "", *call_ids: str) -> Turn:
        return Turn(
            role=Role.ASSISTANT,
            content=content or None,
            tool_invocations=tuple(
                ToolInvocation(id=call_id, name="lookup", arguments={"q": call_id})
                for call_id in call_ids
            ),
            created_at=self.clock(),
        )

    def tool(self, call_id: str | None, content: str = "ok") -> Turn:
        return Turn(role=Role.TOOL, tool_call_id=call_id, content=content, created_at=self.clock())


@pytest.fixture
def clock():
    """Fake wall clock starting at the current time."""
    return FakeClock()


@pytest.fixture
def turns(clock):
    """Turn factory bound to the fake clock."""
    return TurnFactory(clock)


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    """Turn store, parametrized over both backends."""
    if request.param == "sqlite":
        backend = SQLiteTurnStore(tmp_path / "convguard.db")
        yield backend
        backend.close()
    else:
        yield InMemoryTurnStore()


@pytest.fixture
def memory_store():
    """In-memory store for tests that do not need both backends."""
    return InMemoryTurnStore()


@pytest.fixture
def locks():
    return ConversationLocks()


@pytest.fixture
def validator(store, clock):
    """OpenAI-policy validator over the parametrized store."""
    return IntegrityValidator(store, clock=clock)


@pytest.fixture
def conversation(store):
    """A fresh conversation in the parametrized store."""
    return store.create_conversation("user-1", title="Groceries")


@pytest.fixture
def seed(store):
    """Append turns to a conversation and return the stored copies."""

    def _seed(conversation_id, *new_turns):
        return store.append_turns(conversation_id, list(new_turns))

    return _seed


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "hypothesis: property-based tests")
    config.addinivalue_line("markers", "slow: tests that take >1s")
