from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from branching_agent_loop.errors import ChannelClosedError

T = TypeVar("T")
R = TypeVar("R")

_FAILED = object()


class EventChannel(Generic[T, R]):
    """Ordered single-consumer event stream with a separately awaitable result.

    ``push`` never blocks: events are buffered until the consumer pulls them.
    Exactly one terminal event (or one ``fail``) closes the channel.
    """

    def __init__(self, is_terminal: Callable[[T], bool], extract_result: Callable[[T], R]):
        self._is_terminal = is_terminal
        self._extract_result = extract_result
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._done = asyncio.Event()
        self._closed = False
        self._drained = False
        self._result: R | None = None
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: T) -> None:
        if self._closed:
            raise ChannelClosedError("Cannot push to a closed event channel")
        self._queue.put_nowait(event)
        if self._is_terminal(event):
            self._closed = True
            self._result = self._extract_result(event)
            self._done.set()

    def fail(self, error: BaseException) -> None:
        if self._closed:
            raise ChannelClosedError("Cannot fail a closed event channel")
        self._closed = True
        self._error = error
        self._queue.put_nowait(_FAILED)
        self._done.set()

    async def result(self) -> R:
        await self._done.wait()
        if self._error is not None:
            raise self._error
        return self._result  # type: ignore[return-value]

    def __aiter__(self) -> "EventChannel[T, R]":
        return self

    async def __anext__(self) -> T:
        if self._drained:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _FAILED:
            self._drained = True
            assert self._error is not None
            raise self._error
        if self._is_terminal(item):
            self._drained = True
        return item


AGENT_START = "agent_start"
TURN_START = "turn_start"
MESSAGE_START = "message_start"
MESSAGE_UPDATE = "message_update"
MESSAGE_END = "message_end"
TOOL_EXECUTION_START = "tool_execution_start"
TOOL_EXECUTION_UPDATE = "tool_execution_update"
TOOL_EXECUTION_END = "tool_execution_end"
TURN_END = "turn_end"
COMPACTION_START = "compaction_start"
COMPACTION_END = "compaction_end"
AUTO_RETRY_START = "auto_retry_start"
AUTO_RETRY_END = "auto_retry_end"
AGENT_END = "agent_end"


@dataclass(frozen=True)
class AgentEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


def agent_event_channel() -> EventChannel[AgentEvent, Any]:
    return EventChannel(
        is_terminal=lambda e: e.type == AGENT_END,
        extract_result=lambda e: e.data.get("result"),
    )


def assistant_message_channel() -> EventChannel[dict, dict]:
    """Channel used by providers: deltas, then a terminal ``done`` carrying the message."""
    return EventChannel(
        is_terminal=lambda d: d.get("type") == "done",
        extract_result=lambda d: d["message"],
    )
