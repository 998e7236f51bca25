from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from branching_agent_loop.cancellation import AbortSignal

ProgressCallback = Callable[[Any], None]


@dataclass(frozen=True)
class ToolResult:
    content: str
    details: Any = None
    is_error: bool = False


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(
        self,
        call_id: str,
        tool_input: dict[str, Any],
        signal: AbortSignal,
        on_update: ProgressCallback,
    ) -> ToolResult | str: ...


@dataclass
class FunctionTool:
    """Registers a coroutine function as a tool."""

    name: str
    description: str
    handler: Callable[..., Awaitable[ToolResult | str]]
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    async def execute(
        self,
        call_id: str,
        tool_input: dict[str, Any],
        signal: AbortSignal,
        on_update: ProgressCallback,
    ) -> ToolResult | str:
        return await self.handler(call_id, tool_input, signal, on_update)
