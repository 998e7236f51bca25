from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.event_channel import EventChannel
from branching_agent_loop.tool import Tool

ConvertCustom = Callable[[dict], "dict | None"]


@dataclass(frozen=True)
class ModelRequest:
    model: str
    system_prompt: str
    messages: list[dict]
    tools: list[dict] = field(default_factory=list)
    max_tokens: int = 8192
    temperature: float = 1.0


@runtime_checkable
class ModelProvider(Protocol):
    def stream_turn(self, request: ModelRequest, signal: AbortSignal | None = None) -> EventChannel[dict, dict]:
        """Start one assistant turn and return its delta stream.

        Deltas are dicts tagged by ``type`` (``start``, ``text_delta``,
        ``thinking_delta``, ``tool_use_delta``); the terminal ``done`` delta
        carries the final assistant message. Transport errors fail the
        channel; errors reported by the model arrive as a message with
        ``stop_reason == "error"``.
        """
        ...

    async def complete(self, *, model: str, system_prompt: str, prompt: str, max_tokens: int) -> str:
        """Non-streaming single prompt (used for compaction summaries)."""
        ...

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        ...


def create_provider(
    provider_name: str,
    api_key: str,
    *,
    convert_custom: ConvertCustom | None = None,
) -> ModelProvider:
    """Factory: create a ModelProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from branching_agent_loop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, convert_custom=convert_custom)
    if name == "openai":
        from branching_agent_loop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, convert_custom=convert_custom)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
