from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.event_channel import EventChannel, assistant_message_channel
from branching_agent_loop.messages import assistant_message
from branching_agent_loop.provider import ConvertCustom
from branching_agent_loop.tool import Tool

_background_tasks: set[asyncio.Task] = set()


def to_tool_dicts(tools: list[Tool]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def to_wire_messages(messages: list[dict], convert_custom: ConvertCustom | None = None) -> list[dict]:
    """Convert internal messages to Anthropic-style ``user``/``assistant`` turns.

    Tool results become ``tool_result`` blocks in a user turn, thinking blocks
    are dropped, custom messages pass through ``convert_custom`` (or are
    dropped), and consecutive turns with the same role are merged.
    """
    out: list[dict] = []
    for msg in messages:
        role = msg.get("role")
        if role == "custom":
            converted = convert_custom(msg) if convert_custom else None
            if converted is None:
                continue
            role, content = converted["role"], converted["content"]
        elif role == "tool_result":
            role = "user"
            content = [{
                "type": "tool_result",
                "tool_use_id": msg["tool_use_id"],
                "content": str(msg.get("content", "")),
                "is_error": bool(msg.get("is_error")),
            }]
        elif role == "assistant":
            blocks = msg.get("content", [])
            if isinstance(blocks, str):
                content = [{"type": "text", "text": blocks}] if blocks else []
            else:
                content = [
                    {k: b[k] for k in ("type", "text", "id", "name", "input") if k in b}
                    for b in blocks
                    if isinstance(b, dict) and b.get("type") in ("text", "tool_use")
                ]
            if not content:
                continue
        else:
            content = msg.get("content", "")

        if out and out[-1]["role"] == role:
            out[-1]["content"] = _as_blocks(out[-1]["content"]) + _as_blocks(content)
        else:
            out.append({"role": role, "content": content})
    return out


def _as_blocks(content) -> list[dict]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content)


class PartialMessage:
    """Text and thinking accumulated from deltas, for turns cut short by an abort."""

    def __init__(self) -> None:
        self.text_parts: list[str] = []
        self.thinking_parts: list[str] = []

    def content(self) -> list[dict]:
        content: list[dict] = []
        if self.thinking_parts:
            content.append({"type": "thinking", "thinking": "".join(self.thinking_parts)})
        if self.text_parts:
            content.append({"type": "text", "text": "".join(self.text_parts)})
        return content

    def aborted_message(self, model: str) -> dict:
        return assistant_message(self.content(), stop_reason="aborted", model=model, error_message="aborted")


def start_stream(
    produce: Callable[[EventChannel[dict, dict], PartialMessage], Awaitable[None]],
    signal: AbortSignal | None,
    model: str,
) -> EventChannel[dict, dict]:
    """Run ``produce`` in a background task that feeds a fresh channel.

    When ``signal`` fires mid-stream the producer is cancelled and the
    channel terminates with an ``aborted`` message holding whatever text
    had already arrived.
    """
    channel = assistant_message_channel()
    partial = PartialMessage()

    async def runner() -> None:
        try:
            await produce(channel, partial)
        except asyncio.CancelledError:
            if not channel.closed:
                channel.push({"type": "done", "message": partial.aborted_message(model)})
            raise
        except Exception as ex:
            logger.debug(f"Model stream failed: {type(ex).__name__}: {ex}")
            if not channel.closed:
                channel.fail(ex)

    loop = asyncio.get_running_loop()
    task = loop.create_task(runner())
    _track(task)
    if signal is not None:
        _track(loop.create_task(_cancel_on_abort(signal, task)))
    return channel


async def _cancel_on_abort(signal: AbortSignal, task: asyncio.Task) -> None:
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({waiter, task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if signal.aborted and not task.done():
        task.cancel()


def _track(task: asyncio.Task) -> None:
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
