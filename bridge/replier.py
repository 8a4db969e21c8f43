"""Chat-side reply operations for one conversational turn."""
from typing import Optional

from loguru import logger

from channels.base import BaseChannel, ChannelError


class TurnReplier:
    """Binds a channel to one chat.

    Delivery failures are logged and reported through return values; they
    never raise, so a failed send cannot abort the agent run.
    """

    def __init__(self, channel: BaseChannel, chat_id: str):
        self.channel = channel
        self.chat_id = chat_id
        self.delivered = 0

    async def deliver(self, text: str) -> Optional[str]:
        """Send a new message; returns its handle, or None if sending failed."""
        try:
            handle = await self.channel.deliver(self.chat_id, text)
        except ChannelError as e:
            logger.error(f"Failed to send reply: chat_id={self.chat_id}, error={e}")
            return None
        self.delivered += 1
        return handle

    async def update(self, handle: str, text: str) -> bool:
        try:
            await self.channel.update(handle, text)
        except ChannelError as e:
            logger.warning(f"Failed to update message {handle}: {e}")
            return False
        return True

    async def retract(self, handle: str) -> bool:
        try:
            await self.channel.retract(handle)
        except ChannelError as e:
            logger.warning(f"Failed to retract message {handle}: {e}")
            return False
        return True
