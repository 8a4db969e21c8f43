"""
通道基类 - 统一的聊天通道抽象接口
"""
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any, Optional, List, Callable
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from loguru import logger


class ChannelType(str, Enum):
    """通道类型"""
    FEISHU = "feishu"        # 飞书


class ChannelError(Exception):
    """通道操作失败 (发送/更新/撤回)"""


class Message(BaseModel):
    """统一入站消息模型"""
    message_id: str
    channel: ChannelType

    # 会话信息
    chat_id: str
    chat_type: str = "p2p"     # p2p, group

    # 发送者信息
    sender_id: Optional[str] = None

    # 消息内容 (已去除 @ 提及)
    content: str
    mentions: List[str] = Field(default_factory=list)

    # 元数据
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChannelConfig(BaseModel):
    """通道配置"""
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    api_endpoint: Optional[str] = None
    verification_token: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class BaseChannel(ABC):
    """通道基类

    出站: deliver 发送新消息并返回消息句柄, update/retract 可选。
    入站: 子类解析平台事件后通过 _emit_message 交给回调。
    """

    def __init__(self, channel_name: str, channel_type: ChannelType, config: ChannelConfig):
        self.channel_name = channel_name
        self.channel_type = channel_type
        self.config = config
        self.is_connected = False
        self.is_running = False

        self.logger = logger.bind(channel=self.channel_name)

        # 消息处理回调
        self._on_message_callbacks: List[Callable] = []

    # ============ 抽象方法 ============

    @abstractmethod
    async def connect(self) -> bool:
        """连接到通道"""
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        """断开通道连接"""
        pass

    @abstractmethod
    async def deliver(self, chat_id: str, text: str) -> str:
        """发送文本消息, 返回消息句柄; 失败抛出 ChannelError"""
        pass

    # ============ 可选能力 ============

    async def update(self, message_handle: str, text: str) -> None:
        """原地更新已发送的消息"""
        raise ChannelError(f"Channel {self.channel_name} does not support message update")

    async def retract(self, message_handle: str) -> None:
        """撤回已发送的消息"""
        raise ChannelError(f"Channel {self.channel_name} does not support message retraction")

    # ============ 生命周期 ============

    async def start(self) -> bool:
        """校验配置并建立连接; 返回 False 表示通道不可用"""
        if self.is_running:
            return True

        if not self.config.enabled:
            self.logger.info("Channel disabled, not starting")
            return False

        if not await self.validate_config():
            return False

        if not await self.connect():
            self.logger.error("Channel failed to connect")
            return False

        self.is_running = True
        self.is_connected = True
        self.logger.info("Channel started")
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            return True

        await self.disconnect()
        self.is_running = False
        self.is_connected = False
        self.logger.info("Channel stopped")
        return True

    # ============ 入站 ============

    def on_message(self, callback: Callable[[Message], Any]) -> None:
        """注册入站消息回调, 同一回调只注册一次"""
        if callback not in self._on_message_callbacks:
            self._on_message_callbacks.append(callback)

    async def _emit_message(self, message: Message) -> None:
        for callback in list(self._on_message_callbacks):
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Message callback failed: message_id={message.message_id}, error={e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "channel_name": self.channel_name,
            "channel_type": self.channel_type.value,
            "enabled": self.config.enabled,
            "is_connected": self.is_connected,
            "is_running": self.is_running,
        }

    async def validate_config(self) -> bool:
        """子类检查必需的凭据"""
        return True
