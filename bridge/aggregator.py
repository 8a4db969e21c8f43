"""
Streaming aggregator - turns an agent run's fragment stream into chat replies.

The backend streams text with no sentence or paragraph markers. Two emission
policies are available:

* ``StreamAggregator`` flushes whatever has accumulated once the stream has
  been quiet for an idle window, plus a final flush when the run ends.
* ``SingleReplyAggregator`` sends exactly one reply per run and shows a
  placeholder while a slow run is still working.

Both stop at a global deadline, give the run's error precedence over any
buffered text, and let ``asyncio.CancelledError`` through untouched.
"""
import asyncio
from typing import List, Optional, Union

from loguru import logger

from gateway.agent_run import AgentRun

from .replier import TurnReplier

DEFAULT_IDLE_WINDOW = 2.0
DEFAULT_GLOBAL_TIMEOUT = 5 * 60.0
DEFAULT_THINKING_THRESHOLD = 2.5
DEFAULT_PLACEHOLDER_TEXT = "正在思考..."
NO_REPLY_TOKEN = "NO_REPLY"


class AggregationTimeout(TimeoutError):
    """The run did not finish before the global deadline."""

    def __init__(self, timeout: float):
        super().__init__(f"timed out waiting for agent reply after {timeout:g}s")
        self.timeout = timeout


class StreamAggregator:
    """Idle-window flushing.

    A fragment restarts the idle timer; when it fires the trimmed buffer is
    emitted (if non-empty) and the timer stays off until the next fragment.
    Replies are emitted in arrival order and never overlap.
    """

    def __init__(
        self,
        idle_window: float = DEFAULT_IDLE_WINDOW,
        global_timeout: float = DEFAULT_GLOBAL_TIMEOUT,
    ):
        self.idle_window = idle_window
        self.global_timeout = global_timeout

    async def aggregate(self, run: AgentRun, replier: TurnReplier) -> List[str]:
        """Consume ``run`` until it ends; returns the replies emitted."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.global_timeout
        idle_deadline: Optional[float] = None
        buffer: List[str] = []
        emitted: List[str] = []

        async def flush() -> None:
            content = "".join(buffer).strip()
            buffer.clear()
            if content:
                emitted.append(content)
                await replier.deliver(content)

        while True:
            now = loop.time()
            if now >= deadline:
                await flush()
                logger.warning(f"Run {run.run_id} exceeded {self.global_timeout:g}s, stopping")
                raise AggregationTimeout(self.global_timeout)

            wait = deadline - now
            if idle_deadline is not None:
                wait = min(wait, idle_deadline - now)

            try:
                fragment = await run.next_fragment(timeout=max(wait, 0))
            except asyncio.TimeoutError:
                if idle_deadline is not None and loop.time() >= idle_deadline:
                    idle_deadline = None
                    await flush()
                continue

            if fragment is None:
                await flush()
                logger.info(f"Run {run.run_id} complete, {len(emitted)} reply(ies) sent")
                return emitted

            buffer.append(fragment)
            idle_deadline = loop.time() + self.idle_window


class SingleReplyAggregator:
    """One reply per run, with a thinking placeholder for slow runs.

    If the run is still going after ``thinking_threshold`` seconds a
    placeholder is sent. The final answer replaces it in place (or is sent
    fresh when the update fails); an empty or ``NO_REPLY`` answer retracts it.
    """

    def __init__(
        self,
        global_timeout: float = DEFAULT_GLOBAL_TIMEOUT,
        thinking_threshold: float = DEFAULT_THINKING_THRESHOLD,
        placeholder_text: str = DEFAULT_PLACEHOLDER_TEXT,
        no_reply_token: str = NO_REPLY_TOKEN,
    ):
        self.global_timeout = global_timeout
        self.thinking_threshold = thinking_threshold
        self.placeholder_text = placeholder_text
        self.no_reply_token = no_reply_token

    async def aggregate(self, run: AgentRun, replier: TurnReplier) -> List[str]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.global_timeout
        placeholder_at: Optional[float] = (
            started + self.thinking_threshold if self.thinking_threshold > 0 else None
        )
        placeholder: Optional[str] = None
        buffer: List[str] = []

        try:
            while True:
                now = loop.time()
                if now >= deadline:
                    handle, placeholder = placeholder, None
                    await self._finish(replier, handle, "".join(buffer))
                    logger.warning(f"Run {run.run_id} exceeded {self.global_timeout:g}s, stopping")
                    raise AggregationTimeout(self.global_timeout)

                if placeholder_at is not None and now >= placeholder_at:
                    placeholder_at = None
                    placeholder = await replier.deliver(self.placeholder_text)
                    continue

                wait = deadline - now
                if placeholder_at is not None:
                    wait = min(wait, placeholder_at - now)

                try:
                    fragment = await run.next_fragment(timeout=max(wait, 0))
                except asyncio.TimeoutError:
                    continue

                if fragment is None:
                    handle, placeholder = placeholder, None
                    result = await self._finish(replier, handle, "".join(buffer))
                    return [result] if result else []

                buffer.append(fragment)
        except Exception:
            if placeholder is not None:
                await replier.retract(placeholder)
            raise

    async def _finish(self, replier: TurnReplier, placeholder: Optional[str], text: str) -> Optional[str]:
        content = text.strip()
        if not content or content == self.no_reply_token:
            if placeholder is not None:
                await replier.retract(placeholder)
            return None

        if placeholder is not None:
            if await replier.update(placeholder, content):
                return content
            logger.warning("Placeholder update failed, sending the reply as a new message")
        await replier.deliver(content)
        return content


Aggregator = Union[StreamAggregator, SingleReplyAggregator]


def build_aggregator(
    mode: str = "stream",
    idle_window: float = DEFAULT_IDLE_WINDOW,
    global_timeout: float = DEFAULT_GLOBAL_TIMEOUT,
    thinking_threshold: float = DEFAULT_THINKING_THRESHOLD,
    placeholder_text: str = DEFAULT_PLACEHOLDER_TEXT,
    no_reply_token: str = NO_REPLY_TOKEN,
) -> Aggregator:
    if mode == "stream":
        return StreamAggregator(idle_window=idle_window, global_timeout=global_timeout)
    if mode == "single":
        return SingleReplyAggregator(
            global_timeout=global_timeout,
            thinking_threshold=thinking_threshold,
            placeholder_text=placeholder_text,
            no_reply_token=no_reply_token,
        )
    raise ValueError(f"unknown reply mode: {mode}")
