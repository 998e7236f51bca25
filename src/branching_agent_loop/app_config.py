from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    context_window: int
    max_tool_result_chars: int
    compaction_enabled: bool
    compaction_reserve_tokens: int
    compaction_keep_recent_tokens: int
    max_retries: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    parallel_tool_calls: bool
    steering_mode: str
    follow_up_mode: str
    working_directory: str | None
    memory_db_path: str
    continue_conversation: bool
    resume_session_id: str | None
    configured_session_id: str | None
    fork_session: bool
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        context_window=int(config.get("ContextWindow", 200_000)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        compaction_enabled=_to_bool(config.get("CompactionEnabled", True), default=True),
        compaction_reserve_tokens=int(config.get("CompactionReserveTokens", 16_384)),
        compaction_keep_recent_tokens=int(config.get("CompactionKeepRecentTokens", 20_000)),
        max_retries=int(config.get("MaxRetries", 3)),
        retry_base_delay_seconds=float(config.get("RetryBaseDelaySeconds", 2.0)),
        retry_max_delay_seconds=float(config.get("RetryMaxDelaySeconds", 60.0)),
        parallel_tool_calls=_to_bool(config.get("ParallelToolCalls", False), default=False),
        steering_mode=str(config.get("SteeringMode", "one_at_a_time")).strip().lower(),
        follow_up_mode=str(config.get("FollowUpMode", "one_at_a_time")).strip().lower(),
        working_directory=config.get("WorkingDirectory"),
        memory_db_path=str(config.get("MemoryDbPath", ".agent_loop/sessions.db")),
        continue_conversation=_to_bool(config.get("ContinueConversation", False), default=False),
        resume_session_id=str(config.get("ResumeSessionId", "")).strip() or None,
        configured_session_id=str(config.get("SessionId", "")).strip() or None,
        fork_session=_to_bool(config.get("ForkSession", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def resolve_runtime_env(provider_name: str, environ: Mapping[str, str]) -> RuntimeEnv:
    """Pick the provider's API key out of an explicitly supplied environment."""
    env_var = _API_KEY_VARS.get(provider_name, "ANTHROPIC_API_KEY")
    return RuntimeEnv(
        provider_api_key=environ.get(env_var, ""),
        provider_env_var=env_var,
    )
