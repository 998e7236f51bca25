import asyncio
import unittest

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.tool import FunctionTool, ToolResult
from branching_agent_loop.tool_executor import ABORTED, ToolExecutor, skipped_result
from tests.fakes import BlockingTool, RecordingTool

_PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "limit": {"type": "integer"}},
    "required": ["path"],
}


class ToolExecutorTests(unittest.TestCase):
    def test_valid_call_returns_tool_result(self) -> None:
        tool = RecordingTool("read", ToolResult("file body", details={"bytes": 9}), input_schema=_PATH_SCHEMA)
        executor = ToolExecutor([tool])

        result = asyncio.run(executor.execute("c1", "read", {"path": "a.txt"}, AbortSignal()))

        self.assertEqual("file body", result.content)
        self.assertEqual({"bytes": 9}, result.details)
        self.assertFalse(result.is_error)
        self.assertEqual([("c1", {"path": "a.txt"})], tool.calls)

    def test_plain_string_result_is_wrapped(self) -> None:
        executor = ToolExecutor([RecordingTool("echo", "hello")])
        result = asyncio.run(executor.execute("c1", "echo", {}, AbortSignal()))
        self.assertEqual(ToolResult("hello"), result)

    def test_invalid_arguments_never_reach_the_tool(self) -> None:
        tool = RecordingTool("read", input_schema=_PATH_SCHEMA)
        executor = ToolExecutor([tool])

        result = asyncio.run(executor.execute("c1", "read", {"limit": "ten"}, AbortSignal()))

        self.assertTrue(result.is_error)
        self.assertEqual("validation", result.details["reason"])
        self.assertIn("'path' is a required property", result.content)
        self.assertIn("limit", result.content)
        self.assertEqual([], tool.calls)

    def test_non_object_arguments_are_rejected(self) -> None:
        executor = ToolExecutor([RecordingTool("read", input_schema=_PATH_SCHEMA)])
        result = asyncio.run(executor.execute("c1", "read", "a.txt", AbortSignal()))
        self.assertTrue(result.is_error)
        self.assertIn("<root>", result.content)

    def test_malformed_schema_is_a_validation_result(self) -> None:
        for schema in ({"type": "objectt"}, {"type": "object", "properties": {"path": {"type": 5}}}):
            with self.subTest(schema=schema):
                tool = RecordingTool("broken", input_schema=schema)
                result = asyncio.run(ToolExecutor([tool]).execute("c1", "broken", {}, AbortSignal()))

                self.assertTrue(result.is_error)
                self.assertEqual("validation", result.details["reason"])
                self.assertIn("invalid input schema", result.content)
                self.assertEqual([], tool.calls)

    def test_unknown_tool_is_an_error_result(self) -> None:
        executor = ToolExecutor([])
        result = asyncio.run(executor.execute("c1", "nope", {}, AbortSignal()))
        self.assertTrue(result.is_error)
        self.assertIn('unknown tool "nope"', result.content)

    def test_tool_exception_becomes_error_result(self) -> None:
        def boom(call_id: str, args: dict) -> None:
            raise RuntimeError("disk on fire")

        executor = ToolExecutor([RecordingTool("explode", hook=boom)])
        result = asyncio.run(executor.execute("c1", "explode", {}, AbortSignal()))

        self.assertTrue(result.is_error)
        self.assertIn("disk on fire", result.content)
        self.assertEqual("exception", result.details["reason"])

    def test_long_output_is_truncated_with_notice(self) -> None:
        executor = ToolExecutor([RecordingTool("dump", "x" * 100)], max_result_chars=10)
        result = asyncio.run(executor.execute("c1", "dump", {}, AbortSignal()))
        self.assertTrue(result.content.startswith("x" * 10 + "\n\n[OUTPUT TRUNCATED"))
        self.assertIn("Showing 10 of 100 characters from dump", result.content)

    def test_progress_updates_are_forwarded(self) -> None:
        async def handler(call_id, args, signal, on_update):
            on_update("half")
            on_update("done")
            return "ok"

        updates: list = []
        executor = ToolExecutor([FunctionTool("work", "does work", handler)])
        asyncio.run(executor.execute("c1", "work", {}, AbortSignal(), updates.append))
        self.assertEqual(["half", "done"], updates)

    def test_already_aborted_signal_skips_execution(self) -> None:
        tool = RecordingTool("read")
        signal = AbortSignal()
        signal.abort("stop")

        result = asyncio.run(ToolExecutor([tool]).execute("c1", "read", {}, signal))

        self.assertEqual(skipped_result(ABORTED), result)
        self.assertEqual([], tool.calls)

    def test_abort_cancels_tool_after_grace_period(self) -> None:
        async def scenario() -> tuple[ToolResult, BlockingTool]:
            tool = BlockingTool()
            signal = AbortSignal()
            executor = ToolExecutor([tool], abort_grace_seconds=0.01)
            pending = asyncio.create_task(executor.execute("c1", "slow", {}, signal))
            await tool.started.wait()
            signal.abort("user pressed stop")
            return await asyncio.wait_for(pending, timeout=5), tool

        result, tool = asyncio.run(scenario())

        self.assertTrue(result.is_error)
        self.assertEqual(ABORTED, result.content)
        self.assertEqual({"reason": "aborted"}, result.details)
        self.assertTrue(tool.cancelled)

    def test_cooperative_tool_finishes_within_grace(self) -> None:
        async def handler(call_id, args, signal, on_update):
            await signal.wait()
            return "stopped cleanly"

        async def scenario() -> ToolResult:
            signal = AbortSignal()
            executor = ToolExecutor([FunctionTool("coop", "cooperative", handler)], abort_grace_seconds=5)
            pending = asyncio.create_task(executor.execute("c1", "coop", {}, signal))
            await asyncio.sleep(0)
            signal.abort()
            return await asyncio.wait_for(pending, timeout=5)

        self.assertEqual(ABORTED, asyncio.run(scenario()).content)


if __name__ == "__main__":
    unittest.main()
