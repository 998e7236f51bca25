from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable

from loguru import logger

from branching_agent_loop.agent_config import ALL, AgentConfig
from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.compaction import CompactionEngine, CompactionResult
from branching_agent_loop.errors import AgentBusyError
from branching_agent_loop.event_channel import AGENT_END, AgentEvent, EventChannel
from branching_agent_loop.memory.session_tree import SessionTree
from branching_agent_loop.messages import normalize_input
from branching_agent_loop.provider import ModelProvider
from branching_agent_loop.tool_executor import ToolExecutor
from branching_agent_loop.turn_engine import AgentRunResult, LoopState, TurnEngine

Listener = Callable[[AgentEvent], None]


class Agent:
    """Owns a session tree and drives one run at a time against it.

    Steering messages interrupt the remaining tool calls of the current turn;
    follow-up messages are only picked up once the run would otherwise end.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: ModelProvider,
        *,
        tree: SessionTree | None = None,
        compactor: CompactionEngine | None = None,
    ):
        self._config = config
        self._provider = provider
        self._tree = tree if tree is not None else SessionTree()
        self._executor = ToolExecutor(
            config.tools,
            max_result_chars=config.max_tool_result_chars,
            abort_grace_seconds=config.tool_abort_grace_seconds,
        )
        self._compactor = compactor or CompactionEngine(
            provider,
            config.model,
            settings=config.compaction,
            context_window=config.context_window,
        )
        self._steering: deque[dict] = deque()
        self._follow_ups: deque[dict] = deque()
        self._listeners: list[Listener] = []
        self._engine: TurnEngine | None = None
        self._signal = AbortSignal()
        self._last_state = LoopState.IDLE

    @property
    def tree(self) -> SessionTree:
        return self._tree

    @property
    def state(self) -> LoopState:
        if self._engine is not None:
            return self._engine.state
        return self._last_state

    @property
    def is_running(self) -> bool:
        return self._engine is not None

    @property
    def pending_steering(self) -> int:
        return len(self._steering)

    @property
    def pending_follow_ups(self) -> int:
        return len(self._follow_ups)

    # -- runs ---------------------------------------------------------------

    def prompt(self, value: str | dict | list) -> EventChannel[AgentEvent, AgentRunResult]:
        messages = normalize_input(value)
        if not messages:
            raise ValueError("prompt() needs at least one message")
        return self._start(messages)

    def continue_run(self) -> EventChannel[AgentEvent, AgentRunResult]:
        """Resume from the current leaf, e.g. after an aborted or failed run."""
        context = self._tree.build_messages()
        if not context:
            raise ValueError("Nothing to continue: the session is empty")
        last = context[-1]
        if last.get("role") == "assistant":
            queued = self._take(self._steering, self._config.steering_mode) or self._take(
                self._follow_ups, self._config.follow_up_mode
            )
            if queued:
                return self._start(queued)
            if last.get("stop_reason") != "error":
                raise ValueError("Cannot continue from an assistant message without queued input")
            # Reissue the failed turn; the error response stays on its own branch.
            leaf = self._tree.path_to_leaf()[-1]
            if leaf.parent_id is None:
                raise ValueError("Cannot continue: the failed response has no preceding entry")
            self._tree.set_leaf(leaf.parent_id)
        return self._start([])

    async def run(self, value: str | dict | list) -> AgentRunResult:
        return await self.prompt(value).result()

    def _start(self, prompts: list[dict]) -> EventChannel[AgentEvent, AgentRunResult]:
        if self._engine is not None:
            raise AgentBusyError("A run is already active; use steer() or follow_up() instead")

        self._signal = AbortSignal()
        engine = TurnEngine(
            provider=self._provider,
            tree=self._tree,
            executor=self._executor,
            config=self._config,
            signal=self._signal,
            compactor=self._compactor,
            get_steering_messages=self._drain_steering,
            get_follow_up_messages=self._drain_follow_ups,
            on_event=self._dispatch,
        )
        self._engine = engine
        channel = engine.start(prompts)
        assert engine.task is not None
        engine.task.add_done_callback(lambda _: self._finish(engine))
        return channel

    def _finish(self, engine: TurnEngine) -> None:
        if self._engine is engine:
            self._last_state = engine.state
            self._engine = None

    async def wait_for_idle(self) -> None:
        engine = self._engine
        if engine is not None and engine.task is not None:
            await asyncio.shield(engine.task)

    def abort(self, reason: str = "aborted") -> None:
        if self._engine is None:
            return
        logger.info(f"Abort requested: {reason}")
        self._signal.abort(reason)

    # -- injected input -----------------------------------------------------

    def steer(self, value: str | dict | list) -> None:
        self._steering.extend(normalize_input(value))

    def follow_up(self, value: str | dict | list) -> None:
        self._follow_ups.extend(normalize_input(value))

    def clear_queues(self) -> None:
        self._steering.clear()
        self._follow_ups.clear()

    async def _drain_steering(self) -> list[dict]:
        return self._take(self._steering, self._config.steering_mode)

    async def _drain_follow_ups(self) -> list[dict]:
        return self._take(self._follow_ups, self._config.follow_up_mode)

    @staticmethod
    def _take(queue: deque[dict], mode: str) -> list[dict]:
        if not queue:
            return []
        if mode == ALL:
            taken = list(queue)
            queue.clear()
            return taken
        return [queue.popleft()]

    # -- listeners ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _dispatch(self, event: AgentEvent) -> None:
        # Release the agent before the terminal event reaches the channel so a
        # caller awaiting the result can start the next run immediately.
        if event.type == AGENT_END and self._engine is not None:
            self._finish(self._engine)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event.type}")

    # -- session operations -------------------------------------------------

    async def compact(self, custom_instructions: str | None = None) -> CompactionResult | None:
        if self._engine is not None:
            raise AgentBusyError("Cannot compact while a run is active")
        return await self._compactor.compact(self._tree, custom_instructions=custom_instructions)

    def branch(self, entry_id: str, summary: str | None = None) -> str:
        if self._engine is not None:
            raise AgentBusyError("Cannot branch while a run is active")
        return self._tree.branch(entry_id, summary)
