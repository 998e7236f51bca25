from __future__ import annotations

import json
from dataclasses import dataclass, field

import openai
from loguru import logger

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.event_channel import EventChannel
from branching_agent_loop.messages import Usage, assistant_message
from branching_agent_loop.provider import ConvertCustom, ModelRequest
from branching_agent_loop.providers.common import PartialMessage, start_stream, to_tool_dicts, to_wire_messages
from branching_agent_loop.tool import Tool

# OpenAI finish reasons in terms of the internal stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
    "content_filter": "error",
}


def _assistant_to_openai(content: str | list) -> dict:
    if isinstance(content, str):
        return {"role": "assistant", "content": content}
    texts = [b["text"] for b in content if b.get("type") == "text"]
    calls = [
        {
            "id": b["id"],
            "type": "function",
            "function": {"name": b["name"], "arguments": json.dumps(b["input"])},
        }
        for b in content
        if b.get("type") == "tool_use"
    ]
    converted: dict = {"role": "assistant", "content": "\n".join(texts) if texts else None}
    if calls:
        converted["tool_calls"] = calls
    return converted


def _user_to_openai(content: str | list) -> list[dict]:
    """A user turn may carry tool results; each becomes its own ``tool`` message."""
    if isinstance(content, str):
        return [{"role": "user", "content": content}]
    converted: list[dict] = []
    texts: list[str] = []
    for block in content:
        if isinstance(block, str):
            texts.append(block)
        elif block.get("type") == "text":
            texts.append(block["text"])
        elif block.get("type") == "tool_result":
            converted.append({
                "role": "tool",
                "tool_call_id": block["tool_use_id"],
                "content": str(block.get("content", "")),
            })
    if texts:
        converted.append({"role": "user", "content": "\n".join(texts)})
    return converted


def _to_openai_messages(system_prompt: str, wire_messages: list[dict]) -> list[dict]:
    """Chat-completions messages for Anthropic-style wire turns."""
    out: list[dict] = [{"role": "system", "content": system_prompt}] if system_prompt else []
    for msg in wire_messages:
        content = msg.get("content", "")
        if msg["role"] == "assistant":
            out.append(_assistant_to_openai(content))
        else:
            out.extend(_user_to_openai(content))
    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    argument_parts: list[str] = field(default_factory=list)

    def to_block(self) -> dict:
        raw = "".join(self.argument_parts)
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning(f"Unparseable arguments for tool call {self.id} ({self.name}): {raw[:200]}")
            arguments = {}
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": arguments}


class OpenAIProvider:
    def __init__(self, api_key: str, *, convert_custom: ConvertCustom | None = None):
        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._convert_custom = convert_custom

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_tool_dicts(tools)

    def stream_turn(self, request: ModelRequest, signal: AbortSignal | None = None) -> EventChannel[dict, dict]:
        async def produce(channel: EventChannel[dict, dict], partial: PartialMessage) -> None:
            await self._stream(request, channel, partial)

        return start_stream(produce, signal, request.model)

    async def _stream(self, request: ModelRequest, channel: EventChannel[dict, dict], partial: PartialMessage) -> None:
        messages = _to_openai_messages(request.system_prompt, to_wire_messages(request.messages, self._convert_custom))
        tools = _to_openai_tools(request.tools)
        params: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            params["tools"] = tools
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )

        stream = await self._client.chat.completions.create(**params)
        channel.push({"type": "start"})

        pending: dict[int, _PendingCall] = {}
        finish_reason: str | None = None
        usage = Usage()
        async for chunk in stream:
            # With include_usage the last chunk has usage and no choices.
            if getattr(chunk, "usage", None) is not None:
                usage = Usage(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            finish_reason = choice.finish_reason or finish_reason
            delta = choice.delta
            if delta is None:
                continue

            if delta.content:
                partial.text_parts.append(delta.content)
                channel.push({"type": "text_delta", "delta": delta.content})

            for fragment in delta.tool_calls or []:
                call = pending.setdefault(fragment.index, _PendingCall())
                call.id = fragment.id or call.id
                function = fragment.function
                if function is None:
                    continue
                call.name = function.name or call.name
                if function.arguments:
                    call.argument_parts.append(function.arguments)
                    channel.push({"type": "tool_use_delta", "index": fragment.index, "delta": function.arguments})

        content = partial.content()
        content.extend(pending[index].to_block() for index in sorted(pending))
        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")
        logger.debug(f"API response: stop_reason={stop_reason}, finish_reason={finish_reason}, tool_calls={len(pending)}")

        channel.push({
            "type": "done",
            "message": assistant_message(
                content,
                stop_reason=stop_reason,
                usage=usage,
                model=request.model,
                error_message=f"Response stopped: {finish_reason}" if stop_reason == "error" else None,
            ),
        })

    async def complete(self, *, model: str, system_prompt: str, prompt: str, max_tokens: int) -> str:
        """Single non-streaming completion without tools, used for summaries."""
        logger.debug(f"Completion request: model={model}, prompt_chars={len(prompt)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            messages=_to_openai_messages(system_prompt, [{"role": "user", "content": prompt}]),
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"Completion response: chars={len(text)}")
        return text
