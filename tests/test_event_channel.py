import asyncio
import unittest

from branching_agent_loop.errors import ChannelClosedError
from branching_agent_loop.event_channel import (
    AGENT_END,
    TURN_START,
    AgentEvent,
    EventChannel,
    agent_event_channel,
    assistant_message_channel,
)


def _int_channel() -> EventChannel[int, int]:
    return EventChannel(is_terminal=lambda v: v < 0, extract_result=lambda v: -v)


class EventChannelTests(unittest.TestCase):
    def test_buffered_events_are_delivered_in_order(self) -> None:
        async def scenario() -> tuple[list[int], int]:
            channel = _int_channel()
            for value in (1, 2, 3, -7):
                channel.push(value)
            seen = [v async for v in channel]
            return seen, await channel.result()

        seen, result = asyncio.run(scenario())
        self.assertEqual([1, 2, 3, -7], seen)
        self.assertEqual(7, result)

    def test_waiting_consumer_receives_pushes_from_producer(self) -> None:
        async def scenario() -> list[int]:
            channel = _int_channel()

            async def produce() -> None:
                for value in (10, 20, -1):
                    await asyncio.sleep(0)
                    channel.push(value)

            producer = asyncio.create_task(produce())
            seen = [v async for v in channel]
            await producer
            return seen

        self.assertEqual([10, 20, -1], asyncio.run(scenario()))

    def test_push_after_terminal_raises(self) -> None:
        async def scenario() -> None:
            channel = _int_channel()
            channel.push(-1)
            self.assertTrue(channel.closed)
            with self.assertRaises(ChannelClosedError):
                channel.push(5)
            with self.assertRaises(ChannelClosedError):
                channel.fail(RuntimeError("late"))

        asyncio.run(scenario())

    def test_fail_surfaces_error_to_consumer_and_result(self) -> None:
        async def scenario() -> list[int]:
            channel = _int_channel()
            channel.push(1)
            channel.fail(RuntimeError("stream broke"))
            seen: list[int] = []
            with self.assertRaises(RuntimeError):
                async for value in channel:
                    seen.append(value)
            with self.assertRaises(RuntimeError):
                await channel.result()
            return seen

        self.assertEqual([1], asyncio.run(scenario()))

    def test_result_resolves_without_consuming_events(self) -> None:
        async def scenario() -> dict:
            channel = assistant_message_channel()
            channel.push({"type": "start"})
            channel.push({"type": "text_delta", "delta": "hi"})
            channel.push({"type": "done", "message": {"role": "assistant", "content": []}})
            return await channel.result()

        self.assertEqual("assistant", asyncio.run(scenario())["role"])

    def test_agent_event_channel_terminates_on_agent_end(self) -> None:
        async def scenario() -> tuple[list[str], str]:
            channel = agent_event_channel()
            channel.push(AgentEvent(TURN_START, {"turn": 1}))
            channel.push(AgentEvent(AGENT_END, {"result": "done"}))
            types = [e.type async for e in channel]
            return types, await channel.result()

        types, result = asyncio.run(scenario())
        self.assertEqual([TURN_START, AGENT_END], types)
        self.assertEqual("done", result)


if __name__ == "__main__":
    unittest.main()
