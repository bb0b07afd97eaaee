"""
Remote completion clients.

CompletionClient is the narrow interface the engine depends on: it accepts
wire messages plus a tool catalog and returns either text or tool
invocations. AnthropicCompletionClient adapts it to the Anthropic Messages
API.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anthropic
from dotenv import load_dotenv

from .tool_ids import ANTHROPIC_ID_POLICY, ToolIdPolicy
from .types import ToolInvocation

# Auto-load .env from project root
_project_root = Path(__file__).parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


@dataclass(frozen=True)
class ToolSpec:
    """A capability offered to the remote model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class CompletionResult:
    """Reply from a remote completion call."""

    text: str = ""
    tool_invocations: tuple[ToolInvocation, ...] = ()
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_tool_call(self) -> bool:
        return bool(self.tool_invocations)


class CompletionClient(ABC):
    """Interface to a remote language-model API."""

    # Id scheme of the provider's tool invocations, None when unknown
    id_policy: ToolIdPolicy | None = None

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[ToolSpec] = (),
    ) -> CompletionResult:
        """
        Request a completion.

        Args:
            messages: Wire messages ({role, content, tool_calls?, tool_call_id?})
            tools: Tool catalog

        Returns:
            CompletionResult with text or tool invocations
        """


def to_anthropic_messages(
    messages: Sequence[dict[str, Any]],
) -> tuple[str | None, list[dict[str, Any]]]:
    """
    Convert wire messages to Anthropic Messages API parameters.

    System messages become the system prompt. Tool calls become tool_use
    blocks; tool turns become tool_result blocks in a user message. Adjacent
    messages of the same role are merged, since the API requires alternation.

    Returns:
        (system prompt or None, message list)
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""

        if role == "system":
            if content:
                system_parts.append(content)
            continue

        if role == "tool":
            api_role = "user"
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id"),
                    "content": content,
                }
            ]
        elif role == "assistant":
            api_role = "assistant"
            blocks = [{"type": "text", "text": content}] if content else []
            for call in message.get("tool_calls") or []:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call.get("capability_name") or call.get("name", ""),
                        "input": call.get("arguments") or {},
                    }
                )
        else:
            api_role = "user"
            blocks = [{"type": "text", "text": content}]

        if not blocks:
            continue
        if converted and converted[-1]["role"] == api_role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": api_role, "content": blocks})

    system = "\n\n".join(system_parts) if system_parts else None
    return system, converted


class AnthropicCompletionClient(CompletionClient):
    """
    Completion client backed by the Anthropic async SDK.

    Tool invocation ids use the "toolu_" scheme.
    """

    id_policy = ANTHROPIC_ID_POLICY

    # Model mappings
    MODELS = {
        "opus": "claude-opus-4-5-20251101",
        "sonnet": "claude-sonnet-4-20250514",
        "haiku": "claude-haiku-4-5-20251001",
    }

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str = "sonnet",
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ):
        """
        Initialize client.

        Args:
            api_key: Anthropic API key (uses ANTHROPIC_API_KEY env var if None)
            default_model: Default model to use
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature
        """
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "API key required. Set ANTHROPIC_API_KEY environment variable "
                "or pass api_key parameter."
            )

        # Retries are driven by the recovery orchestrator
        self.client = anthropic.AsyncAnthropic(api_key=self.api_key, max_retries=0)
        self.default_model = self._resolve_model(default_model)
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _resolve_model(self, model: str) -> str:
        """Resolve model shorthand to full name."""
        return self.MODELS.get(model, model)

    async def complete(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[ToolSpec] = (),
    ) -> CompletionResult:
        """Get a completion from Claude."""
        system, api_messages = to_anthropic_messages(messages)

        request_params: dict[str, Any] = {
            "model": self.default_model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": api_messages,
        }
        if system:
            request_params["system"] = system
        if tools:
            request_params["tools"] = [tool.to_anthropic() for tool in tools]

        response = await self.client.messages.create(**request_params)

        text = ""
        invocations: list[ToolInvocation] = []
        for block in response.content:
            if block.type == "text":
                text += block.text
            elif block.type == "tool_use":
                invocations.append(
                    ToolInvocation(id=block.id, name=block.name, arguments=dict(block.input))
                )

        return CompletionResult(
            text=text,
            tool_invocations=tuple(invocations),
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=self.default_model,
        )


__all__ = [
    "AnthropicCompletionClient",
    "CompletionClient",
    "CompletionResult",
    "ToolSpec",
    "to_anthropic_messages",
]
