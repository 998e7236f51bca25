import asyncio
import os
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from branching_agent_loop.agent import Agent
from branching_agent_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from branching_agent_loop.bootstrap import AppRuntime, bootstrap_runtime
from branching_agent_loop.errors import AgentLoopError
from branching_agent_loop.event_channel import (
    AUTO_RETRY_START,
    COMPACTION_END,
    MESSAGE_UPDATE,
    TOOL_EXECUTION_END,
    TOOL_EXECUTION_START,
    AgentEvent,
    EventChannel,
)
from branching_agent_loop.memory import SessionTree
from branching_agent_loop.memory.models import COMPACTION, MESSAGE
from branching_agent_loop.messages import text_of
from branching_agent_loop.turn_engine import AgentRunResult, LoopState

_LINE_PREFIX = "assistant> "
_USER_PROMPT = "you> "


def _preview(entry_text: str, max_chars: int = 60) -> str:
    text = " ".join(entry_text.split())
    return text if len(text) <= max_chars else text[: max_chars - 3] + "..."


def render_tree(tree: SessionTree) -> str:
    """Indented view of every entry; ``*`` marks the path to the current leaf."""
    on_path = {e.id for e in tree.path_to_leaf()}
    labels = tree.labels()
    roots = [e for e in tree.entries() if e.parent_id is None]
    lines: list[str] = []

    def describe(entry) -> str:
        if entry.type == MESSAGE and entry.message is not None:
            role = entry.message.get("role", "?")
            return f"{role}: {_preview(text_of(entry.message)) or '(no text)'}"
        if entry.type == COMPACTION:
            return f"compaction (kept from {entry.payload.get('first_kept_entry_id')})"
        return entry.type

    stack = [(root, 0) for root in reversed(roots)]
    while stack:
        entry, depth = stack.pop()
        marker = "*" if entry.id in on_path else " "
        label = f" [{labels[entry.id]}]" if entry.id in labels else ""
        leaf = "  <- leaf" if entry.id == tree.leaf_id else ""
        lines.append(f"{marker} {'  ' * depth}{entry.id}{label} {describe(entry)}{leaf}")
        children = tree.children(entry.id)
        # Linear runs stay at the same depth; only forks indent.
        child_depth = depth + 1 if len(children) > 1 else depth
        stack.extend((child, child_depth) for child in reversed(children))
    return "\n".join(lines) if lines else "(empty session)"


async def _consume(channel: EventChannel[AgentEvent, AgentRunResult]) -> AgentRunResult:
    print(_LINE_PREFIX, end="", flush=True)
    async for event in channel:
        data = event.data
        if event.type == MESSAGE_UPDATE:
            delta = data.get("delta", {})
            if delta.get("type") == "text_delta":
                print(delta.get("delta", ""), end="", flush=True)
        elif event.type == TOOL_EXECUTION_START:
            print(f"\n  [{data['tool_name']}] running...", flush=True)
        elif event.type == TOOL_EXECUTION_END:
            status = "failed" if data.get("is_error") else "done"
            print(f"  [{data['tool_name']}] {status}", flush=True)
            print(_LINE_PREFIX, end="", flush=True)
        elif event.type == AUTO_RETRY_START:
            print(f"\n  [retry {data['attempt']}/{data['max_attempts']} in {data['delay']:.0f}s]", flush=True)
        elif event.type == COMPACTION_END and data.get("result") is not None:
            result = data["result"]
            print(f"\n  [compacted ~{result.tokens_before:,} -> ~{result.tokens_after:,} tokens]", flush=True)
    return await channel.result()


async def _handle_command(runtime: AppRuntime, agent: Agent, command: str) -> None:
    name, _, rest = command.partition(" ")
    rest = rest.strip()
    if name == "/compact":
        result = await agent.compact(rest or None)
        if result is None:
            print("Nothing to compact.")
        else:
            print(f"Compacted ~{result.tokens_before:,} -> ~{result.tokens_after:,} estimated tokens.")
    elif name == "/tree":
        print(render_tree(agent.tree))
    elif name == "/branch":
        entry_id, _, summary = rest.partition(" ")
        if not entry_id:
            print("Usage: /branch <entry_id> [summary of the abandoned branch]")
            return
        agent.branch(entry_id, summary.strip() or None)
        print(f"Leaf moved to {agent.tree.leaf_id}")
    elif name == "/label":
        entry_id, _, label = rest.partition(" ")
        if not entry_id:
            print("Usage: /label <entry_id> [label]")
            return
        agent.tree.append_label(entry_id, label.strip() or None)
    elif name == "/session":
        summary = runtime.session_manager.build_session_summary(runtime.session_id)
        for key, value in summary.items():
            print(f"  {key}: {value}")
    else:
        print("Commands: /compact [focus], /tree, /branch <id> [summary], /label <id> [label], /session, exit")


async def main() -> None:
    load_dotenv()
    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name, os.environ)
    if not env.provider_api_key:
        print(f"{env.provider_env_var} environment variable is required.", file=sys.stderr)
        sys.exit(1)

    runtime = bootstrap_runtime(app, env)
    agent = runtime.agent

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.abort, "interrupted")
    except NotImplementedError:
        logger.debug("SIGINT handler unavailable on this platform; Ctrl+C will exit instead of aborting")

    print("branching-agent-loop (type 'exit' to quit, '/help' for commands)")
    print(f"Session: {runtime.session_id}")
    print("Tools: " + ", ".join(t.name for t in runtime.tools))
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, _USER_PROMPT)
            except EOFError:
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if trimmed.startswith("/"):
                    await _handle_command(runtime, agent, trimmed)
                    continue
                result = await _consume(agent.prompt(trimmed))
                print("\n")
                if result.state is LoopState.ERROR and result.error is not None:
                    print(f"[error: {result.error.message}]\n")
                elif result.state is LoopState.ABORTED:
                    print("[aborted]\n")
            except (AgentLoopError, ValueError) as ex:
                logger.error(f"Command failed: {ex}")
    finally:
        runtime.memory_store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
