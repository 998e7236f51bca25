from __future__ import annotations

import asyncio
import platform
import subprocess
from typing import Any

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.tool import ProgressCallback, ToolResult

_IS_WINDOWS = platform.system() == "Windows"


class BashTool:
    def __init__(self, working_directory: str | None = None, timeout_seconds: float = 30.0):
        self._cwd = working_directory
        self._timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return "Execute a bash command and return its output (stdout + stderr)."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The bash command to execute",
                },
            },
            "required": ["command"],
        }

    async def execute(
        self,
        call_id: str,
        tool_input: dict[str, Any],
        signal: AbortSignal,
        on_update: ProgressCallback,
    ) -> ToolResult:
        command = tool_input["command"]

        if _IS_WINDOWS:
            proc = await asyncio.create_subprocess_shell(
                f"cmd.exe /c {command}",
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._cwd,
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        else:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._cwd,
            )

        chunks: list[str] = []

        async def pump() -> None:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode(errors="replace")
                chunks.append(line)
                on_update({"output": line})
            await proc.wait()

        pump_task = asyncio.ensure_future(pump())
        abort_wait = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {pump_task, abort_wait},
                timeout=self._timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_wait.cancel()

        if pump_task not in done:
            _kill(proc)
            pump_task.cancel()
            await asyncio.gather(pump_task, return_exceptions=True)
            await proc.wait()
            if signal.aborted:
                return ToolResult(content="".join(chunks) + "\n[aborted]", details={"aborted": True}, is_error=True)
            return ToolResult(content=f"[timed out after {self._timeout_seconds:.0f}s]", is_error=True)

        output = "".join(chunks).rstrip()
        if proc.returncode != 0:
            return ToolResult(
                content=f"{output}\n[exit code {proc.returncode}]",
                details={"exit_code": proc.returncode},
                is_error=True,
            )
        return ToolResult(content=output, details={"exit_code": 0})


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
