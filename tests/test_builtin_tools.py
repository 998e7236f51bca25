import asyncio
import platform
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.tool_registry import get_builtin_tools
from branching_agent_loop.tools.bash_tool import BashTool
from branching_agent_loop.tools.file_tools import ReadFileTool, WriteFileTool

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _ignore(_update) -> None:
    return None


class FileToolTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"tools-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._cwd = str(self._tmp_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _call(self, tool, **tool_input):
        return asyncio.run(tool.execute("c1", tool_input, AbortSignal(), _ignore))

    def test_write_then_append_then_read(self) -> None:
        written = self._call(WriteFileTool(self._cwd), path="notes/a.txt", content="one\n")
        appended = self._call(WriteFileTool(self._cwd, append=True), path="notes/a.txt", content="two\n")
        read = self._call(ReadFileTool(self._cwd), path="notes/a.txt")

        self.assertFalse(written.is_error)
        self.assertFalse(appended.is_error)
        self.assertEqual("one\ntwo\n", read.content)
        self.assertEqual(8, read.details["chars"])

    def test_append_requires_existing_file(self) -> None:
        result = self._call(WriteFileTool(self._cwd, append=True), path="missing.txt", content="x")
        self.assertTrue(result.is_error)
        self.assertIn("write_file", result.content)

    def test_read_missing_file_is_error_result(self) -> None:
        result = self._call(ReadFileTool(self._cwd), path="nope.txt")
        self.assertTrue(result.is_error)
        self.assertTrue(result.content.startswith("Error reading file"))

    def test_builtin_tool_names(self) -> None:
        names = [t.name for t in get_builtin_tools(self._cwd)]
        self.assertEqual(["bash", "read_file", "write_file", "append_file"], names)


@unittest.skipIf(platform.system() == "Windows", "uses POSIX shell commands")
class BashToolTests(unittest.TestCase):
    def test_output_is_streamed_and_returned(self) -> None:
        updates: list = []
        result = asyncio.run(
            BashTool().execute("c1", {"command": "echo first; echo second"}, AbortSignal(), updates.append)
        )
        self.assertEqual("first\nsecond", result.content)
        self.assertEqual({"exit_code": 0}, result.details)
        self.assertEqual([{"output": "first\n"}, {"output": "second\n"}], updates)

    def test_nonzero_exit_is_error(self) -> None:
        result = asyncio.run(BashTool().execute("c1", {"command": "exit 3"}, AbortSignal(), _ignore))
        self.assertTrue(result.is_error)
        self.assertEqual(3, result.details["exit_code"])

    def test_timeout_kills_command(self) -> None:
        tool = BashTool(timeout_seconds=0.2)
        result = asyncio.run(tool.execute("c1", {"command": "sleep 30"}, AbortSignal(), _ignore))
        self.assertTrue(result.is_error)
        self.assertIn("timed out", result.content)

    def test_abort_kills_command(self) -> None:
        async def scenario():
            signal = AbortSignal()
            pending = asyncio.create_task(BashTool().execute("c1", {"command": "sleep 30"}, signal, _ignore))
            await asyncio.sleep(0.1)
            signal.abort()
            return await asyncio.wait_for(pending, timeout=5)

        result = asyncio.run(scenario())
        self.assertTrue(result.is_error)
        self.assertEqual({"aborted": True}, result.details)


if __name__ == "__main__":
    unittest.main()
