from __future__ import annotations

from dataclasses import dataclass, field

from branching_agent_loop.compaction import CompactionSettings
from branching_agent_loop.provider import ConvertCustom
from branching_agent_loop.tool import Tool

ONE_AT_A_TIME = "one_at_a_time"
ALL = "all"
QUEUE_MODES = (ONE_AT_A_TIME, ALL)


@dataclass(frozen=True)
class RetrySettings:
    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0


@dataclass
class AgentConfig:
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 1.0
    system_prompt: str = ""
    tools: list[Tool] = field(default_factory=list)
    context_window: int = 200_000
    compaction: CompactionSettings = field(default_factory=CompactionSettings)
    max_tool_result_chars: int = 40_000
    retry: RetrySettings = field(default_factory=RetrySettings)
    max_overflow_recoveries: int = 1
    parallel_tool_calls: bool = False
    steering_mode: str = ONE_AT_A_TIME
    follow_up_mode: str = ONE_AT_A_TIME
    tool_abort_grace_seconds: float = 5.0
    convert_custom: ConvertCustom | None = None

    def __post_init__(self) -> None:
        for name in ("steering_mode", "follow_up_mode"):
            if getattr(self, name) not in QUEUE_MODES:
                raise ValueError(f"{name} must be one of {QUEUE_MODES}, got {getattr(self, name)!r}")
