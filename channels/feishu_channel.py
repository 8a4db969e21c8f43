"""
飞书通道 - 开放平台 REST 接口 + 事件订阅回调
"""
import asyncio
import json
import time
from typing import Any, Dict, Optional, Set

import aiohttp

from .base import BaseChannel, ChannelConfig, ChannelError, ChannelType, Message
from .filters import MessageDeduplicator, should_respond_in_group, strip_mentions

DEFAULT_API_BASE = "https://open.feishu.cn/open-apis"
MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"


class FeishuChannel(BaseChannel):
    """飞书机器人通道

    出站消息走 im/v1 接口; 入站消息由事件订阅回调 (HTTP) 推送给 handle_event。
    """

    def __init__(self, config: ChannelConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__("feishu", ChannelType.FEISHU, config)

        self.app_id = config.app_key
        self.app_secret = config.app_secret
        self.verification_token = config.verification_token
        self.api_base = (config.api_endpoint or DEFAULT_API_BASE).rstrip("/")

        self.tenant_access_token: Optional[str] = None
        self.token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        self.session = session
        self._owns_session = session is None
        self._dedup = MessageDeduplicator()
        self._dispatch_tasks: Set[asyncio.Task] = set()

    async def connect(self) -> bool:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
            self._owns_session = True
        try:
            await self._ensure_token()
        except ChannelError as e:
            self.logger.error(f"Failed to connect Feishu: {e}")
            return False

        self.is_connected = True
        self.logger.info("Feishu channel connected")
        return True

    async def disconnect(self) -> bool:
        for task in list(self._dispatch_tasks):
            task.cancel()
        if self._dispatch_tasks:
            await asyncio.gather(*self._dispatch_tasks, return_exceptions=True)

        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

        self.is_connected = False
        self.logger.info("Feishu channel disconnected")
        return True

    # ============ 鉴权 ============

    async def _refresh_access_token(self) -> None:
        url = f"{self.api_base}/auth/v3/tenant_access_token/internal"
        payload = {"app_id": self.app_id, "app_secret": self.app_secret}

        data = await self._call("POST", url, json_body=payload, authorized=False)
        self.tenant_access_token = data.get("tenant_access_token")
        self.token_expires_at = time.time() + data.get("expire", 7200) - 300
        self.logger.info("Feishu access token refreshed")

    async def _ensure_token(self) -> None:
        async with self._token_lock:
            if not self.tenant_access_token or time.time() >= self.token_expires_at:
                await self._refresh_access_token()

    async def _call(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        authorized: bool = True,
    ) -> Dict[str, Any]:
        """调用开放平台接口, code != 0 视为失败"""
        if self.session is None:
            raise ChannelError("Feishu channel is not connected")

        headers = {"Content-Type": "application/json; charset=utf-8"}
        if authorized:
            await self._ensure_token()
            headers["Authorization"] = f"Bearer {self.tenant_access_token}"

        try:
            async with self.session.request(
                method, url, headers=headers, params=params, json=json_body
            ) as response:
                result = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChannelError(f"Feishu {method} {url} failed: {e}") from e

        if not isinstance(result, dict) or result.get("code") != 0:
            message = result.get("msg") if isinstance(result, dict) else result
            raise ChannelError(f"Feishu API error: {message}")
        return result

    # ============ 出站 ============

    async def deliver(self, chat_id: str, text: str) -> str:
        url = f"{self.api_base}/im/v1/messages"
        payload = {
            "receive_id": chat_id,
            "msg_type": "text",
            "content": json.dumps({"text": text}, ensure_ascii=False),
        }
        result = await self._call("POST", url, json_body=payload, params={"receive_id_type": "chat_id"})
        return (result.get("data") or {}).get("message_id", "")

    async def update(self, message_handle: str, text: str) -> None:
        url = f"{self.api_base}/im/v1/messages/{message_handle}"
        payload = {
            "msg_type": "text",
            "content": json.dumps({"text": text}, ensure_ascii=False),
        }
        await self._call("PUT", url, json_body=payload)

    async def retract(self, message_handle: str) -> None:
        url = f"{self.api_base}/im/v1/messages/{message_handle}"
        await self._call("DELETE", url)

    # ============ 入站 ============

    async def handle_event(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """处理事件订阅回调, 返回给飞书的响应体"""
        if "encrypt" in body:
            self.logger.warning("Encrypted Feishu events are not supported, disable the encrypt key")
            return {"code": 1, "msg": "encrypted events not supported"}

        if body.get("type") == "url_verification":
            if not self._token_matches(body.get("token")):
                return {"code": 1, "msg": "invalid verification token"}
            return {"challenge": body.get("challenge", "")}

        header = body.get("header") or {}
        if not self._token_matches(header.get("token")):
            self.logger.warning("Dropping Feishu event with invalid verification token")
            return {"code": 1, "msg": "invalid verification token"}

        if header.get("event_type") == MESSAGE_RECEIVE_EVENT:
            message = self.parse_message_event(body.get("event") or {})
            if message is not None:
                # 飞书要求 3 秒内响应, 回调异步执行
                task = asyncio.create_task(self._emit_message(message))
                self._dispatch_tasks.add(task)
                task.add_done_callback(self._dispatch_tasks.discard)

        return {"code": 0}

    def _token_matches(self, token: Optional[str]) -> bool:
        return not self.verification_token or token == self.verification_token

    def parse_message_event(self, event: Dict[str, Any]) -> Optional[Message]:
        """解析 im.message.receive_v1, 不需要处理时返回 None"""
        msg = event.get("message") or {}
        message_id = msg.get("message_id")
        if not message_id:
            return None

        if self._dedup.is_duplicate(message_id):
            self.logger.debug(f"Duplicate message ignored: {message_id}")
            return None

        # 只处理文本消息
        if msg.get("message_type") != "text":
            return None

        try:
            text = json.loads(msg.get("content") or "{}").get("text", "")
        except (ValueError, AttributeError) as e:
            self.logger.warning(f"Failed to parse message content: {e}")
            return None
        if not text:
            return None

        chat_type = msg.get("chat_type") or ""
        mentions = [m.get("key", "") for m in (msg.get("mentions") or [])]

        # 群聊智能过滤
        if chat_type == "group" and not should_respond_in_group(text, mentions):
            return None

        text = strip_mentions(text)
        if not text:
            return None

        sender = (event.get("sender") or {}).get("sender_id") or {}
        return Message(
            message_id=message_id,
            channel=ChannelType.FEISHU,
            chat_id=msg.get("chat_id", ""),
            chat_type=chat_type or "p2p",
            sender_id=sender.get("open_id"),
            content=text,
            mentions=mentions,
            metadata={"create_time": msg.get("create_time")},
        )

    async def validate_config(self) -> bool:
        if not self.config.enabled:
            return True

        if not (self.app_id and self.app_secret):
            self.logger.error("Feishu config missing: need app_id + app_secret")
            return False

        return True
