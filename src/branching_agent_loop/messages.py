"""Message constructors and helpers.

Messages are plain dicts in an Anthropic-style internal format, tagged by
``role``: ``user``, ``assistant``, ``tool_result`` and ``custom``. A custom
message carries an opaque ``payload`` that the loop stores and relays but
never reads.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

USER = "user"
ASSISTANT = "assistant"
TOOL_RESULT = "tool_result"
CUSTOM = "custom"

ROLES = (USER, ASSISTANT, TOOL_RESULT, CUSTOM)

SUMMARY_PREFIX = "[CONTEXT SUMMARY]\n"
SUMMARY_SUFFIX = "\n[END CONTEXT SUMMARY]"


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_write_tokens

    @classmethod
    def from_dict(cls, data: dict | None) -> "Usage":
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            cache_read_tokens=int(data.get("cache_read_tokens") or 0),
            cache_write_tokens=int(data.get("cache_write_tokens") or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
        }


def user_message(content: str | list[dict]) -> dict:
    return {"role": USER, "content": content, "timestamp": utc_now()}


def assistant_message(
    content: list[dict],
    *,
    stop_reason: str = "end_turn",
    usage: Usage | None = None,
    model: str = "",
    error_message: str | None = None,
) -> dict:
    message = {
        "role": ASSISTANT,
        "content": content,
        "usage": (usage or Usage()).to_dict(),
        "stop_reason": stop_reason,
        "model": model,
        "timestamp": utc_now(),
    }
    if error_message is not None:
        message["error_message"] = error_message
    return message


def tool_result_message(
    tool_use_id: str,
    tool_name: str,
    content: str,
    *,
    details: Any = None,
    is_error: bool = False,
) -> dict:
    return {
        "role": TOOL_RESULT,
        "tool_use_id": tool_use_id,
        "tool_name": tool_name,
        "content": content,
        "details": details,
        "is_error": is_error,
        "timestamp": utc_now(),
    }


def custom_message(custom_type: str, payload: Any = None) -> dict:
    return {"role": CUSTOM, "custom_type": custom_type, "payload": payload, "timestamp": utc_now()}


def summary_message(summary: str, timestamp: str | None = None) -> dict:
    return {
        "role": USER,
        "content": SUMMARY_PREFIX + summary + SUMMARY_SUFFIX,
        "timestamp": timestamp or utc_now(),
        "compaction_summary": True,
    }


def branch_summary_message(summary: str, timestamp: str | None = None) -> dict:
    return {
        "role": USER,
        "content": f"[Branch summary]\n{summary}",
        "timestamp": timestamp or utc_now(),
        "branch_summary": True,
    }


def normalize_input(value: str | dict | list) -> list[dict]:
    """Turn prompt/steering input into a list of messages."""
    if isinstance(value, str):
        return [user_message(value)]
    if isinstance(value, dict):
        return [_checked(value)]
    return [user_message(v) if isinstance(v, str) else _checked(v) for v in value]


def _checked(message: dict) -> dict:
    role = message.get("role")
    if role not in ROLES:
        raise ValueError(f"Unsupported message role: {role!r}")
    if "timestamp" not in message:
        message = {**message, "timestamp": utc_now()}
    return message


def tool_calls_of(message: dict) -> list[dict]:
    if message.get("role") != ASSISTANT:
        return []
    content = message.get("content", [])
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict) and b.get("type") == "tool_use"]


def text_of(message: dict) -> str:
    role = message.get("role")
    if role == CUSTOM:
        return ""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
    return str(content)


def message_chars(message: dict) -> int:
    """Character weight of a message, used for token estimation."""
    role = message.get("role")
    if role == TOOL_RESULT:
        return len(str(message.get("content", "")))
    if role == CUSTOM:
        return len(json.dumps(message.get("payload"), default=str))

    content = message.get("content", "")
    if isinstance(content, str):
        return len(content)

    total = 0
    for block in content if isinstance(content, list) else []:
        if isinstance(block, str):
            total += len(block)
            continue
        if not isinstance(block, dict):
            continue
        block_type = block.get("type", "")
        if block_type == "text":
            total += len(block.get("text", ""))
        elif block_type == "thinking":
            total += len(block.get("thinking", ""))
        elif block_type == "tool_use":
            total += len(block.get("name", ""))
            total += len(json.dumps(block.get("input", {})))
        elif block_type == "tool_result":
            total += len(str(block.get("content", "")))
    return total
