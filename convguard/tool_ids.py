"""
Tool-invocation id policies.

Completion providers use different id schemes, so the format check is a
pluggable policy rather than a hard-coded prefix.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

_ID_BODY = re.compile(r"^[A-Za-z0-9_\-]+$")


class ToolIdPolicy(ABC):
    """Decides whether a tool-invocation id is well formed."""

    name: str = "abstract"

    @abstractmethod
    def is_valid(self, tool_call_id: str | None) -> bool:
        """
        Check an id.

        Args:
            tool_call_id: Id to check (may be None or empty)

        Returns:
            True if the id is well formed
        """


@dataclass
class PrefixIdPolicy(ToolIdPolicy):
    """Ids made of a fixed prefix followed by a token of bounded length."""

    prefix: str
    min_body_length: int = 1
    max_length: int = 128
    name: str = "prefix"

    def is_valid(self, tool_call_id: str | None) -> bool:
        if not tool_call_id or len(tool_call_id) > self.max_length:
            return False
        if not tool_call_id.startswith(self.prefix):
            return False
        body = tool_call_id[len(self.prefix) :]
        return len(body) >= self.min_body_length and bool(_ID_BODY.match(body))


@dataclass
class AnyIdPolicy(ToolIdPolicy):
    """Accept any non-blank token without whitespace."""

    max_length: int = 128
    name: str = "any"

    def is_valid(self, tool_call_id: str | None) -> bool:
        if not tool_call_id or len(tool_call_id) > self.max_length:
            return False
        return not any(ch.isspace() for ch in tool_call_id)


OPENAI_ID_POLICY = PrefixIdPolicy(prefix="call_", name="openai")
ANTHROPIC_ID_POLICY = PrefixIdPolicy(prefix="toolu_", name="anthropic")

_POLICIES: dict[str, ToolIdPolicy] = {
    "openai": OPENAI_ID_POLICY,
    "anthropic": ANTHROPIC_ID_POLICY,
    "any": AnyIdPolicy(),
}


def get_id_policy(name: str) -> ToolIdPolicy:
    """
    Look up a named id policy.

    Raises:
        ValueError: If the policy name is unknown
    """
    try:
        return _POLICIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown tool id policy: {name!r} (expected one of {sorted(_POLICIES)})"
        ) from None


__all__ = [
    "ANTHROPIC_ID_POLICY",
    "AnyIdPolicy",
    "OPENAI_ID_POLICY",
    "PrefixIdPolicy",
    "ToolIdPolicy",
    "get_id_policy",
]
