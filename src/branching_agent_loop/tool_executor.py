from __future__ import annotations

import asyncio
from typing import Any

import jsonschema
from loguru import logger

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.errors import ToolValidationError
from branching_agent_loop.tool import ProgressCallback, Tool, ToolResult

SKIPPED_DUE_TO_STEERING = "Skipped due to steering message."
ABORTED = "Tool execution aborted."


def skipped_result(reason: str = SKIPPED_DUE_TO_STEERING) -> ToolResult:
    """Synthetic result for a call that never ran."""
    tag = "skipped_due_to_steering" if reason == SKIPPED_DUE_TO_STEERING else "aborted"
    return ToolResult(content=reason, details={"reason": tag}, is_error=True)


def validate_arguments(tool: Tool, arguments: Any) -> None:
    schema = tool.input_schema or {"type": "object"}
    # A broken schema still has to produce a result for the call.
    try:
        jsonschema.Draft202012Validator.check_schema(schema)
        validator = jsonschema.Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path))
    except jsonschema.exceptions.SchemaError as ex:
        raise ToolValidationError(tool.name, [f"invalid input schema: {ex.message}"]) from ex
    except jsonschema.exceptions.UnknownType as ex:
        raise ToolValidationError(tool.name, [f"invalid input schema: unknown type {ex.type!r}"]) from ex
    if errors:
        raise ToolValidationError(
            tool.name,
            [f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors],
        )


class ToolExecutor:
    def __init__(
        self,
        tools: list[Tool],
        *,
        max_result_chars: int = 40_000,
        abort_grace_seconds: float = 5.0,
    ):
        self._tool_map: dict[str, Tool] = {t.name: t for t in tools}
        self._max_result_chars = max_result_chars
        self._abort_grace_seconds = abort_grace_seconds

    @property
    def tools(self) -> list[Tool]:
        return list(self._tool_map.values())

    def get(self, name: str) -> Tool | None:
        return self._tool_map.get(name)

    async def execute(
        self,
        call_id: str,
        tool_name: str,
        arguments: Any,
        signal: AbortSignal,
        on_update: ProgressCallback | None = None,
    ) -> ToolResult:
        tool = self._tool_map.get(tool_name)
        if tool is None:
            return ToolResult(content=f'Error: unknown tool "{tool_name}"', details={"reason": "unknown_tool"}, is_error=True)

        try:
            validate_arguments(tool, arguments)
        except ToolValidationError as ex:
            logger.debug(f"Rejected arguments for {tool_name} ({call_id}): {ex.errors}")
            return ToolResult(content=str(ex), details={"reason": "validation", "errors": ex.errors}, is_error=True)

        if signal.aborted:
            return skipped_result(ABORTED)

        task = asyncio.ensure_future(tool.execute(call_id, arguments, signal, on_update or _ignore_update))
        abort_wait = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_wait.cancel()

        if not task.done():
            return await self._settle_aborted(tool_name, call_id, task)
        if task.cancelled():
            return skipped_result(ABORTED)

        try:
            raw = task.result()
        except Exception as ex:
            return ToolResult(content=f'Error executing tool "{tool_name}": {ex}', details={"reason": "exception"}, is_error=True)

        result = raw if isinstance(raw, ToolResult) else ToolResult(content=str(raw))
        return self._truncate(result, tool_name)

    async def _settle_aborted(self, tool_name: str, call_id: str, task: asyncio.Future) -> ToolResult:
        done, _ = await asyncio.wait({task}, timeout=self._abort_grace_seconds)
        if not done:
            logger.warning(
                f"{tool_name} ({call_id}) still running {self._abort_grace_seconds:.1f}s after abort; cancelling"
            )
            task.cancel()
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"{tool_name} ({call_id}) failed while aborting: {task.exception()}")
        return skipped_result(ABORTED)

    def _truncate(self, result: ToolResult, tool_name: str) -> ToolResult:
        content = result.content
        if self._max_result_chars <= 0 or len(content) <= self._max_result_chars:
            return result

        original_length = len(content)
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {self._max_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_result_chars:,} chars"
        )
        return ToolResult(
            content=content[: self._max_result_chars] + message,
            details=result.details,
            is_error=result.is_error,
        )


def _ignore_update(_: Any) -> None:
    return None
