"""
网关连接 - WebSocket 传输层
"""
import asyncio
import json
from typing import Any, Dict, Optional, Union

import websockets
from loguru import logger
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from .errors import TransportError
from .protocol import GatewayProtocol


class GatewayConnection:
    """单个到 Gateway 的 WebSocket 连接

    写操作串行化, 读操作只允许读循环调用。
    """

    def __init__(self, websocket: Any, url: str):
        self.websocket = websocket
        self.url = url
        self._send_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(cls, url: str, timeout: Optional[float] = 10.0) -> "GatewayConnection":
        """建立连接"""
        logger.info(f"Opening gateway WebSocket: {url}")
        try:
            websocket = await websockets.connect(
                url,
                open_timeout=timeout,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Gateway WebSocket connect failed: {e}")
            raise TransportError(f"failed to connect to gateway {url}: {e}") from e
        logger.info("Gateway WebSocket established")
        return cls(websocket, url)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_message(self, message: Union[BaseModel, Dict[str, Any], str]) -> None:
        """发送消息"""
        if isinstance(message, BaseModel):
            data = GatewayProtocol.encode(message)
        elif isinstance(message, dict):
            data = json.dumps(message, ensure_ascii=False)
        else:
            data = str(message)

        async with self._send_lock:
            if self._closed:
                raise TransportError("gateway connection is closed")
            try:
                await self.websocket.send(data)
            except (ConnectionClosed, OSError) as e:
                raise TransportError(f"failed to send request: {e}") from e

    async def receive(self) -> Optional[str]:
        """读取一条消息; 对端正常关闭时返回 None"""
        try:
            data = await self.websocket.recv()
        except ConnectionClosedOK:
            return None
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"gateway connection lost: {e}") from e
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return data

    async def close(self) -> None:
        """关闭连接 (幂等)"""
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Ignoring error while closing gateway socket: {e}")
