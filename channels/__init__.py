"""
通道系统 - 聊天平台消息通道抽象
"""
from .base import BaseChannel, ChannelType, ChannelConfig, ChannelError, Message
from .feishu_channel import FeishuChannel

__all__ = [
    "BaseChannel",
    "ChannelType",
    "ChannelConfig",
    "ChannelError",
    "Message",
    "FeishuChannel",
]
