from __future__ import annotations

import anthropic
from loguru import logger

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.event_channel import EventChannel
from branching_agent_loop.messages import Usage, assistant_message
from branching_agent_loop.provider import ConvertCustom, ModelRequest
from branching_agent_loop.providers.common import PartialMessage, start_stream, to_tool_dicts, to_wire_messages
from branching_agent_loop.tool import Tool


class AnthropicProvider:
    def __init__(self, api_key: str, *, convert_custom: ConvertCustom | None = None):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._convert_custom = convert_custom

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_tool_dicts(tools)

    def stream_turn(self, request: ModelRequest, signal: AbortSignal | None = None) -> EventChannel[dict, dict]:
        async def produce(channel: EventChannel[dict, dict], partial: PartialMessage) -> None:
            await self._stream(request, channel, partial)

        return start_stream(produce, signal, request.model)

    async def _stream(self, request: ModelRequest, channel: EventChannel[dict, dict], partial: PartialMessage) -> None:
        messages = to_wire_messages(request.messages, self._convert_custom)
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_tokens}, "
            f"messages={len(messages)}, tools={len(request.tools)}"
        )
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            system=request.system_prompt,
            messages=messages,
        )
        if request.tools:
            kwargs["tools"] = request.tools

        async with self._client.messages.stream(**kwargs) as stream:
            channel.push({"type": "start"})
            async for event in stream:
                if event.type != "content_block_delta":
                    continue
                delta = event.delta
                if delta.type == "text_delta":
                    partial.text_parts.append(delta.text)
                    channel.push({"type": "text_delta", "delta": delta.text})
                elif delta.type == "thinking_delta":
                    partial.thinking_parts.append(delta.thinking)
                    channel.push({"type": "thinking_delta", "delta": delta.thinking})
                elif delta.type == "input_json_delta":
                    channel.push({
                        "type": "tool_use_delta",
                        "index": getattr(event, "index", 0),
                        "delta": delta.partial_json,
                    })

            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        assistant_content: list[dict] = []
        for block in response.content:
            if block.type == "text":
                assistant_content.append({"type": "text", "text": block.text})
            elif block.type == "thinking":
                assistant_content.append({"type": "thinking", "thinking": block.thinking})
            elif block.type == "tool_use":
                assistant_content.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                })

        channel.push({
            "type": "done",
            "message": assistant_message(
                assistant_content,
                stop_reason=response.stop_reason or "end_turn",
                usage=Usage(
                    input_tokens=usage.input_tokens or 0,
                    output_tokens=usage.output_tokens or 0,
                    cache_read_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
                    cache_write_tokens=getattr(usage, "cache_creation_input_tokens", None) or 0,
                ),
                model=request.model,
            ),
        })

    async def complete(self, *, model: str, system_prompt: str, prompt: str, max_tokens: int) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        logger.debug(f"Completion request: model={model}, prompt_chars={len(prompt):,}")
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        usage = response.usage
        logger.debug(
            f"Completion response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return "".join(getattr(b, "text", "") for b in response.content if getattr(b, "type", "text") == "text")
