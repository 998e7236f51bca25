from __future__ import annotations

from branching_agent_loop.tool import Tool
from branching_agent_loop.tools.bash_tool import BashTool
from branching_agent_loop.tools.file_tools import ReadFileTool, WriteFileTool


def get_builtin_tools(working_directory: str | None = None) -> list[Tool]:
    return [
        BashTool(working_directory),
        ReadFileTool(working_directory),
        WriteFileTool(working_directory),
        WriteFileTool(working_directory, append=True),
    ]
