from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from branching_agent_loop.agent import Agent
from branching_agent_loop.agent_config import AgentConfig, RetrySettings
from branching_agent_loop.app_config import AppConfig, RuntimeEnv
from branching_agent_loop.compaction import CompactionSettings
from branching_agent_loop.logging_config import setup_logging
from branching_agent_loop.memory import MemoryStore, SessionManager
from branching_agent_loop.provider import create_provider
from branching_agent_loop.system_prompt import build_system_prompt
from branching_agent_loop.tool import Tool
from branching_agent_loop.tool_registry import get_builtin_tools


@dataclass
class AppRuntime:
    agent: Agent
    memory_store: MemoryStore
    session_manager: SessionManager
    session_id: str
    tools: list[Tool]
    log_descriptions: list[str]


def select_session(app: AppConfig, session_manager: SessionManager) -> str:
    """New, resumed, continued or forked session, in that order of precedence."""
    if app.resume_session_id:
        resolved = session_manager.resolve_session_identifier(app.resume_session_id)
        if resolved is None:
            raise ValueError(f"Resume session not found: {app.resume_session_id}")
        session_id = resolved["id"]
    elif app.continue_conversation and app.configured_session_id:
        session_id = session_manager.load_or_create(app.configured_session_id)
    elif app.continue_conversation:
        recent = session_manager.list_sessions(limit=1)
        session_id = recent[0]["id"] if recent else session_manager.create_session()
    else:
        session_id = session_manager.create_session()

    if app.fork_session:
        session_id = session_manager.fork_session(session_id)
    return session_id


def build_agent_config(app: AppConfig, tools: list[Tool]) -> AgentConfig:
    return AgentConfig(
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        system_prompt=build_system_prompt(app.working_directory),
        tools=tools,
        context_window=app.context_window,
        compaction=CompactionSettings(
            enabled=app.compaction_enabled,
            reserve_tokens=app.compaction_reserve_tokens,
            keep_recent_tokens=app.compaction_keep_recent_tokens,
        ),
        max_tool_result_chars=app.max_tool_result_chars,
        retry=RetrySettings(
            max_retries=app.max_retries,
            base_delay_seconds=app.retry_base_delay_seconds,
            max_delay_seconds=app.retry_max_delay_seconds,
        ),
        parallel_tool_calls=app.parallel_tool_calls,
        steering_mode=app.steering_mode,
        follow_up_mode=app.follow_up_mode,
    )


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = Path(app.memory_db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    memory_store = MemoryStore(str(db_path))
    session_manager = SessionManager(memory_store, app.model)
    session_id = select_session(app, session_manager)
    tree = session_manager.open_tree(session_id)
    logger.info(f"Session {session_id}: {len(tree)} entries, leaf={tree.leaf_id or '-'}")

    tools = get_builtin_tools(app.working_directory)
    config = build_agent_config(app, tools)
    provider = create_provider(app.provider_name, env.provider_api_key, convert_custom=config.convert_custom)
    agent = Agent(config, provider, tree=tree)

    return AppRuntime(
        agent=agent,
        memory_store=memory_store,
        session_manager=session_manager,
        session_id=session_id,
        tools=tools,
        log_descriptions=log_descriptions,
    )
