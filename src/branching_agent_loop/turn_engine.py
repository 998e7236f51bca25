from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from branching_agent_loop.agent_config import AgentConfig
from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.compaction import CompactionEngine, CompactionResult
from branching_agent_loop.errors import (
    AgentAbortedError,
    ContextOverflowError,
    ErrorInfo,
    FatalModelError,
    ModelTurnError,
    RetryableTransportError,
    describe_exception,
    to_turn_error,
)
from branching_agent_loop.event_channel import (
    AGENT_END,
    AGENT_START,
    AUTO_RETRY_END,
    AUTO_RETRY_START,
    COMPACTION_END,
    COMPACTION_START,
    MESSAGE_END,
    MESSAGE_START,
    MESSAGE_UPDATE,
    TOOL_EXECUTION_END,
    TOOL_EXECUTION_START,
    TOOL_EXECUTION_UPDATE,
    TURN_END,
    TURN_START,
    AgentEvent,
    EventChannel,
    agent_event_channel,
)
from branching_agent_loop.memory.session_tree import SessionTree
from branching_agent_loop.messages import tool_calls_of, tool_result_message
from branching_agent_loop.provider import ModelProvider, ModelRequest
from branching_agent_loop.tool import ToolResult
from branching_agent_loop.tool_executor import ABORTED, SKIPPED_DUE_TO_STEERING, ToolExecutor, skipped_result

MessageSource = Callable[[], Awaitable[list[dict]]]


class LoopState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_STEERING = "awaiting_steering"
    DONE = "done"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class AgentRunResult:
    state: LoopState
    messages: list[dict] = field(default_factory=list)
    leaf_id: str | None = None
    error: ErrorInfo | None = None
    turns: int = 0


class TurnEngine:
    """Runs one agent run: the outer follow-up loop around the inner turn loop.

    Every produced message is appended to the session tree as soon as it
    exists, so an aborted or failed run leaves a resumable history behind.
    """

    def __init__(
        self,
        *,
        provider: ModelProvider,
        tree: SessionTree,
        executor: ToolExecutor,
        config: AgentConfig,
        signal: AbortSignal,
        compactor: CompactionEngine | None = None,
        get_steering_messages: MessageSource | None = None,
        get_follow_up_messages: MessageSource | None = None,
        on_event: Callable[[AgentEvent], None] | None = None,
    ) -> None:
        self._provider = provider
        self._tree = tree
        self._executor = executor
        self._config = config
        self._signal = signal
        self._compactor = compactor
        self._get_steering_messages = get_steering_messages
        self._get_follow_up_messages = get_follow_up_messages
        self._on_event = on_event
        self._tool_defs = provider.convert_tools(executor.tools)
        self._state = LoopState.IDLE
        self._channel: EventChannel[AgentEvent, AgentRunResult] | None = None
        self._task: asyncio.Task | None = None
        self._produced: list[dict] = []
        self._turns = 0

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self, prompts: list[dict]) -> EventChannel[AgentEvent, AgentRunResult]:
        if self._channel is not None:
            raise RuntimeError("TurnEngine instances run exactly once")
        self._channel = agent_event_channel()
        self._task = asyncio.get_running_loop().create_task(self._run(list(prompts)))
        return self._channel

    # -- run lifecycle ------------------------------------------------------

    async def _run(self, prompts: list[dict]) -> None:
        error: ErrorInfo | None = None
        self._emit(AGENT_START, session_id=self._tree.session_id)
        try:
            with self._tree.run_guard():
                state = await self._run_loops(prompts)
        except AgentAbortedError as ex:
            logger.info(f"Run aborted: {ex.reason}")
            state = LoopState.ABORTED
        except ModelTurnError as ex:
            error = describe_exception(ex)
            logger.error(f"Run failed ({error.kind.value}): {error.message}")
            state = LoopState.ERROR
        except Exception as ex:
            logger.exception(f"Unexpected failure in agent loop: {ex}")
            error = describe_exception(ex)
            state = LoopState.ERROR

        self._set_state(state)
        result = AgentRunResult(
            state=state,
            messages=list(self._produced),
            leaf_id=self._tree.leaf_id,
            error=error,
            turns=self._turns,
        )
        logger.info(f"Run finished: state={state.value}, turns={self._turns}, messages={len(self._produced)}")
        self._emit(AGENT_END, result=result, state=state.value)

    async def _run_loops(self, pending: list[dict]) -> LoopState:
        while True:
            while True:
                had_tool_calls, pending = await self._run_turn(pending)
                if not had_tool_calls and not pending:
                    break

            follow_ups = await self._poll(self._get_follow_up_messages)
            if not follow_ups:
                return LoopState.DONE
            logger.debug(f"Resuming with {len(follow_ups)} follow-up message(s)")
            pending = follow_ups

    async def _run_turn(self, pending: list[dict]) -> tuple[bool, list[dict]]:
        """One inner iteration; returns whether tools ran and the next pending input."""
        self._turns += 1
        self._emit(TURN_START, turn=self._turns)
        for message in pending:
            self._append(message)

        self._signal.raise_if_aborted()
        await self._maybe_compact()

        try:
            assistant = await self._stream_turn()
        except ModelTurnError as ex:
            self._record_rejected(ex)
            raise
        self._append(assistant)
        calls = tool_calls_of(assistant)

        if assistant.get("stop_reason") == "aborted":
            results = self._record_skipped(calls, ABORTED)
            self._emit(TURN_END, turn=self._turns, message=assistant, tool_results=results)
            raise AgentAbortedError(self._signal.reason or "aborted")

        results, steering = await self._execute_tool_calls(calls)
        self._emit(TURN_END, turn=self._turns, message=assistant, tool_results=results)
        self._signal.raise_if_aborted()

        if not steering:
            self._set_state(LoopState.AWAITING_STEERING)
            steering = await self._poll(self._get_steering_messages)
        return bool(calls), steering

    # -- model turns --------------------------------------------------------

    async def _stream_turn(self) -> dict:
        recoveries = 0
        while True:
            try:
                return await self._stream_with_retry()
            except ContextOverflowError as ex:
                if recoveries >= self._config.max_overflow_recoveries:
                    raise
                recoveries += 1
                logger.warning(f"Context overflow reported by model ({ex}); compacting and reissuing the turn")
                result = await self._compact("overflow")
                if result is None:
                    raise FatalModelError(f"Context overflow and nothing left to compact: {ex}") from ex

    async def _stream_with_retry(self) -> dict:
        settings = self._config.retry
        retries = 0

        def before_sleep(retry_state) -> None:
            nonlocal retries
            retries += 1
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            info = describe_exception(exc) if exc is not None else None
            logger.warning(
                f"{type(exc).__name__ if exc else 'Unknown'}. Retrying in {wait:.1f}s "
                f"(attempt {retry_state.attempt_number}/{settings.max_retries})..."
            )
            self._emit(
                AUTO_RETRY_START,
                attempt=retry_state.attempt_number,
                max_attempts=settings.max_retries,
                delay=wait,
                error=info.to_dict() if info else None,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RetryableTransportError),
            wait=_hinted_wait(
                wait_exponential(
                    multiplier=settings.base_delay_seconds,
                    min=settings.base_delay_seconds,
                    max=settings.max_delay_seconds,
                )
            ),
            stop=stop_after_attempt(settings.max_retries + 1),
            before_sleep=before_sleep,
            sleep=self._signal.sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    message = await self._stream_once()
        except RetryableTransportError as ex:
            if retries:
                self._emit(AUTO_RETRY_END, success=False, attempts=retries, error=str(ex))
            raise
        if retries:
            self._emit(AUTO_RETRY_END, success=True, attempts=retries)
        return message

    async def _stream_once(self) -> dict:
        self._signal.raise_if_aborted()
        self._set_state(LoopState.STREAMING)
        request = ModelRequest(
            model=self._config.model,
            system_prompt=self._config.system_prompt,
            messages=self._tree.build_messages(),
            tools=self._tool_defs,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        channel = self._provider.stream_turn(request, self._signal)
        started = False
        try:
            async for delta in channel:
                kind = delta.get("type")
                if kind == "start":
                    started = True
                    self._emit(MESSAGE_START, role="assistant")
                elif kind != "done":
                    self._emit(MESSAGE_UPDATE, delta=delta)
            message = await channel.result()
        except Exception as ex:
            error = ex if isinstance(ex, (AgentAbortedError, ModelTurnError)) else to_turn_error(ex)
            if started:
                # Close the attempt's message_start; nothing was stored for it.
                self._emit(MESSAGE_END, message=None, entry_id=None, error=str(error))
            if error is ex:
                raise
            raise error from ex

        if message.get("stop_reason") == "error":
            error = ModelTurnError.from_text(message.get("error_message") or "Model returned an error")
            error.assistant_message = message
            if started:
                self._emit(MESSAGE_END, message=message, entry_id=None, error=str(error))
            raise error
        return message

    # -- compaction ---------------------------------------------------------

    async def _maybe_compact(self) -> None:
        if self._compactor is None:
            return
        if not self._compactor.should_compact(self._tree.build_messages()):
            return
        await self._compact("threshold")

    async def _compact(self, reason: str) -> CompactionResult | None:
        if self._compactor is None:
            return None
        self._signal.raise_if_aborted()
        self._emit(COMPACTION_START, reason=reason)
        try:
            result = await self._compactor.compact(self._tree, self._signal)
        except AgentAbortedError:
            self._emit(COMPACTION_END, reason=reason, result=None, aborted=True)
            raise
        except Exception as ex:
            self._emit(COMPACTION_END, reason=reason, result=None, error=str(ex))
            if reason == "overflow":
                raise FatalModelError(f"Compaction failed during overflow recovery: {ex}") from ex
            logger.warning(f"Compaction failed, continuing with full history: {ex}")
            return None
        self._emit(COMPACTION_END, reason=reason, result=result)
        return result

    # -- tools --------------------------------------------------------------

    async def _execute_tool_calls(self, calls: list[dict]) -> tuple[list[dict], list[dict]]:
        if not calls:
            return [], []
        self._set_state(LoopState.EXECUTING_TOOLS)
        if self._config.parallel_tool_calls:
            return await self._execute_batch(calls)

        results: list[dict] = []
        for index, call in enumerate(calls):
            if self._signal.aborted:
                results.extend(self._record_skipped(calls[index:], ABORTED))
                return results, []
            result = await self._invoke(call)
            results.append(self._record(call, result))

            if self._signal.aborted:
                continue
            steering = await self._poll(self._get_steering_messages)
            if steering:
                skipped = calls[index + 1:]
                if skipped:
                    logger.info(f"Steering received; skipping {len(skipped)} remaining tool call(s)")
                results.extend(self._record_skipped(skipped, SKIPPED_DUE_TO_STEERING))
                return results, steering
        return results, []

    async def _execute_batch(self, calls: list[dict]) -> tuple[list[dict], list[dict]]:
        if self._signal.aborted:
            return self._record_skipped(calls, ABORTED), []
        outcomes = await asyncio.gather(*(self._invoke(c) for c in calls))
        results = [self._record(call, outcome) for call, outcome in zip(calls, outcomes)]
        if self._signal.aborted:
            return results, []
        return results, await self._poll(self._get_steering_messages)

    async def _invoke(self, call: dict) -> ToolResult:
        call_id = str(call.get("id"))
        tool_name = str(call.get("name"))
        arguments = call.get("input", {})
        self._emit(TOOL_EXECUTION_START, call_id=call_id, tool_name=tool_name, arguments=arguments)

        def on_update(partial: Any) -> None:
            self._emit(TOOL_EXECUTION_UPDATE, call_id=call_id, tool_name=tool_name, partial=partial)

        try:
            result = await self._executor.execute(call_id, tool_name, arguments, self._signal, on_update)
        except Exception as ex:
            logger.exception(f"Tool executor failed on {tool_name} ({call_id})")
            result = ToolResult(
                content=f'Error executing tool "{tool_name}": {ex}', details={"reason": "exception"}, is_error=True
            )
        self._emit(TOOL_EXECUTION_END, call_id=call_id, tool_name=tool_name, result=result, is_error=result.is_error)
        return result

    def _record(self, call: dict, result: ToolResult) -> dict:
        message = tool_result_message(
            str(call.get("id")),
            str(call.get("name")),
            result.content,
            details=result.details,
            is_error=result.is_error,
        )
        self._append(message)
        return message

    def _record_skipped(self, calls: list[dict], reason: str) -> list[dict]:
        results = []
        for call in calls:
            call_id = str(call.get("id"))
            tool_name = str(call.get("name"))
            result = skipped_result(reason)
            self._emit(TOOL_EXECUTION_START, call_id=call_id, tool_name=tool_name, arguments=call.get("input", {}))
            self._emit(TOOL_EXECUTION_END, call_id=call_id, tool_name=tool_name, result=result, is_error=True)
            results.append(self._record(call, result))
        return results

    def _record_rejected(self, error: ModelTurnError) -> None:
        """Keep the error response that ended the run, with closed-out tool calls."""
        response = _rejected_response(error)
        if response is None:
            return
        self._append(response, announce=True)
        self._record_skipped(tool_calls_of(response), ABORTED)

    # -- helpers ------------------------------------------------------------

    async def _poll(self, source: MessageSource | None) -> list[dict]:
        if source is None:
            return []
        return list(await source())

    def _append(self, message: dict, *, announce: bool = False) -> str:
        if announce or message.get("role") != "assistant":
            self._emit(MESSAGE_START, message=message)
        entry_id = self._tree.append_message(message)
        self._produced.append(message)
        self._emit(MESSAGE_END, message=message, entry_id=entry_id)
        return entry_id

    def _set_state(self, state: LoopState) -> None:
        if state is not self._state:
            logger.debug(f"Loop state: {self._state.value} -> {state.value}")
            self._state = state

    def _emit(self, event_type: str, **data: Any) -> None:
        assert self._channel is not None
        event = AgentEvent(event_type, data)
        if self._channel.closed:
            logger.debug(f"Dropping {event_type} emitted after the run ended")
            return
        if self._on_event is not None:
            self._on_event(event)
        self._channel.push(event)


def _hinted_wait(fallback: Callable[[Any], float]) -> Callable[[Any], float]:
    """Prefer a server-supplied retry delay over the computed backoff."""

    def wait(retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return float(hint)
        return fallback(retry_state)

    return wait


def _rejected_response(error: BaseException | None) -> dict | None:
    # Overflow recovery re-raises as FatalModelError, so follow the cause chain.
    while error is not None:
        message = getattr(error, "assistant_message", None)
        if isinstance(message, dict):
            return message
        error = error.__cause__
    return None
