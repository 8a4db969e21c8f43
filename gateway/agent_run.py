"""Live handle for one agent turn."""
import asyncio
from collections import deque
from typing import Deque, Optional

from loguru import logger

DEFAULT_FRAGMENT_CAPACITY = 100


class AgentRun:
    """Fragment stream plus single error slot for one backend run.

    The gateway client is the only producer; exactly one consumer (the
    aggregator) reads fragments. Pushing never blocks: once ``capacity``
    fragments are waiting, newer fragments are dropped.
    """

    def __init__(self, run_id: str, capacity: int = DEFAULT_FRAGMENT_CAPACITY):
        self.run_id = run_id
        self.capacity = max(1, capacity)
        self.dropped = 0
        self._fragments: Deque[str] = deque()
        self._ended = False
        self._error: Optional[BaseException] = None
        self._wakeup = asyncio.Event()

    @property
    def ended(self) -> bool:
        """True once the backend signalled turn completion."""
        return self._ended

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def push_fragment(self, text: str) -> bool:
        if self._ended:
            return False
        if len(self._fragments) >= self.capacity:
            self.dropped += 1
            logger.warning(
                "Fragment queue full, dropping fragment: run_id={}, dropped={}",
                self.run_id,
                self.dropped,
            )
            return False
        self._fragments.append(text)
        self._wakeup.set()
        return True

    def end(self) -> None:
        """Close the stream; already queued fragments stay readable."""
        if self._ended:
            return
        self._ended = True
        self._wakeup.set()

    def fail(self, error: BaseException) -> bool:
        """Fill the error slot. Only the first error is kept."""
        if self._error is not None:
            return False
        self._error = error
        self._wakeup.set()
        return True

    async def next_fragment(self, timeout: Optional[float] = None) -> Optional[str]:
        """Wait for the next fragment.

        Returns ``None`` once the stream has ended and been drained. Raises the
        error slot's exception as soon as it is filled, ahead of any queued
        fragments, and ``asyncio.TimeoutError`` when nothing happens within
        ``timeout`` seconds.
        """
        while True:
            if self._error is not None:
                raise self._error
            if self._fragments:
                return self._fragments.popleft()
            if self._ended:
                return None
            self._wakeup.clear()
            await asyncio.wait_for(self._wakeup.wait(), timeout)

    def __repr__(self) -> str:
        return (
            f"AgentRun(run_id={self.run_id!r}, queued={len(self._fragments)}, "
            f"ended={self._ended}, dropped={self.dropped})"
        )
