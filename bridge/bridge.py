"""
Bridge orchestrator - one inbound chat message becomes one agent turn.
"""
import asyncio
from typing import Any, Dict, Optional, Set

from loguru import logger

from channels.base import BaseChannel, ChannelError, Message
from gateway.client import GatewayClient
from gateway.errors import GatewayError

from .aggregator import Aggregator, AggregationTimeout, StreamAggregator
from .replier import TurnReplier

ERROR_REPLY_PREFIX = "处理消息时发生错误: "


def truncate(text: str, max_len: int = 50) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


class Bridge:
    """Wires a chat channel to the Moltbot gateway.

    Every inbound message runs as its own task: invoke the agent, feed the
    run to the aggregator, deliver replies to the originating chat. Turn
    failures become a single error notice; cancelled turns stay silent.
    """

    def __init__(
        self,
        client: GatewayClient,
        channel: BaseChannel,
        aggregator: Optional[Aggregator] = None,
        connect_timeout: float = 10.0,
    ):
        self.client = client
        self.channel = channel
        self.aggregator = aggregator or StreamAggregator()
        self.connect_timeout = connect_timeout
        self._turns: Set[asyncio.Task] = set()
        self.is_running = False

    async def start(self) -> None:
        """Connect to the gateway and start listening to the channel.

        Connection failures propagate; the bridge cannot run without the gateway.
        """
        logger.info(f"Connecting to Moltbot gateway ({self.client.url})...")
        await self.client.connect(timeout=self.connect_timeout)
        logger.info("Connected to Moltbot gateway")

        self.channel.on_message(self._on_channel_message)
        if not await self.channel.start():
            await self.client.close()
            raise ChannelError(f"failed to start channel {self.channel.channel_name}")
        self.is_running = True

    async def stop(self) -> None:
        """Cancel in-flight turns and release the gateway and the channel."""
        logger.info("Shutting down bridge...")
        self.is_running = False
        turns = list(self._turns)
        for task in turns:
            task.cancel()
        if turns:
            await asyncio.gather(*turns, return_exceptions=True)
        await self.channel.stop()
        await self.client.close()
        logger.info("Bridge stopped")

    async def _on_channel_message(self, message: Message) -> None:
        self.submit(message.chat_id, message.content)

    def submit(self, chat_id: str, text: str) -> asyncio.Task:
        """Handle a message in the background; returns the turn task."""
        task = asyncio.create_task(self.handle_message(chat_id, text))
        self._turns.add(task)
        task.add_done_callback(self._on_turn_done)
        return task

    def _on_turn_done(self, task: asyncio.Task) -> None:
        self._turns.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Unhandled error in bridge turn: {error}")

    async def handle_message(self, chat_id: str, text: str) -> None:
        session_key = f"{self.channel.channel_name}:{chat_id}"
        replier = TurnReplier(self.channel, chat_id)
        logger.info(f"Received message: chat_id={chat_id}, text={truncate(text)}")

        try:
            run = await self.client.invoke_agent(session_key, text)
            try:
                await self.aggregator.aggregate(run, replier)
            finally:
                self.client.release_run(run)
        except asyncio.CancelledError:
            logger.info(f"Turn cancelled: chat_id={chat_id}")
            raise
        except (GatewayError, AggregationTimeout) as e:
            logger.error(f"Failed to process message: chat_id={chat_id}, error={e}")
            await replier.deliver(f"{ERROR_REPLY_PREFIX}{e}")

    @property
    def active_turns(self) -> int:
        return len(self._turns)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "gateway_connected": self.client.is_connected,
            "active_turns": self.active_turns,
            "active_runs": self.client.active_runs,
            "channel": self.channel.get_status(),
        }
