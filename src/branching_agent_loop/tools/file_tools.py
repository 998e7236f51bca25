from __future__ import annotations

from pathlib import Path
from typing import Any

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.tool import ProgressCallback, ToolResult


def _resolve(path: str, working_directory: str | None) -> Path:
    file_path = Path(path)
    if not file_path.is_absolute() and working_directory:
        file_path = Path(working_directory) / file_path
    return file_path


class ReadFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a text file and return it."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to read",
                },
            },
            "required": ["path"],
        }

    async def execute(
        self,
        call_id: str,
        tool_input: dict[str, Any],
        signal: AbortSignal,
        on_update: ProgressCallback,
    ) -> ToolResult:
        file_path = _resolve(tool_input["path"], self._working_directory)
        try:
            text = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as ex:
            return ToolResult(content=f"Error reading file: {ex}", is_error=True)
        return ToolResult(content=text, details={"path": str(file_path), "chars": len(text)})


class WriteFileTool:
    def __init__(self, working_directory: str | None = None, *, append: bool = False):
        self._working_directory = working_directory
        self._append = append

    @property
    def name(self) -> str:
        return "append_file" if self._append else "write_file"

    @property
    def description(self) -> str:
        if self._append:
            return (
                "Append content to the end of an existing file. "
                "Create the file with write_file first, then append additional sections."
            )
        return "Write content to a file, creating it if it doesn't exist."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write",
                },
            },
            "required": ["path", "content"],
        }

    async def execute(
        self,
        call_id: str,
        tool_input: dict[str, Any],
        signal: AbortSignal,
        on_update: ProgressCallback,
    ) -> ToolResult:
        path = tool_input["path"]
        content = tool_input["content"]
        file_path = _resolve(path, self._working_directory)
        try:
            if self._append:
                if not file_path.exists():
                    return ToolResult(
                        content=f"Error: file does not exist: {path}. Use write_file to create it first.",
                        is_error=True,
                    )
                with open(file_path, "a", encoding="utf-8") as f:
                    f.write(content)
                return ToolResult(content=f"Successfully appended to {path}", details={"path": str(file_path)})

            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except OSError as ex:
            return ToolResult(content=f"Error writing file: {ex}", is_error=True)
        return ToolResult(content=f"Successfully wrote to {path}", details={"path": str(file_path)})
