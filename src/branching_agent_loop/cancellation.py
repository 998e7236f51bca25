from __future__ import annotations

import asyncio

from branching_agent_loop.errors import AgentAbortedError


class AbortSignal:
    """Cooperative cancellation flag shared by the loop, the executor and tools."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AgentAbortedError(self._reason or "aborted")

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early and raises when the signal fires."""
        self.raise_if_aborted()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        self.raise_if_aborted()
