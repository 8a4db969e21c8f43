"""
测试配置和共享 fixtures
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# 添加项目根目录到路径
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest
import pytest_asyncio
from pydantic import BaseModel

from channels.base import BaseChannel, ChannelConfig, ChannelError, ChannelType
from gateway.client import GatewayClient
from gateway.errors import TransportError
from gateway.protocol import GatewayProtocol

LEGACY_ENV_NAMES = (
    "FEISHU_APP_ID",
    "FEISHU_APP_SECRET",
    "FEISHU_APP_SECRET_PATH",
    "MOLTBOT_CONFIG_PATH",
    "MOLTBOT_AGENT_ID",
    "MOLTBOT_GATEWAY_PORT",
    "MOLTBOT_GATEWAY_TOKEN",
    "FEISHU_THINKING_THRESHOLD_MS",
)


class FakeConnection:
    """内存中的网关连接, 接口与 GatewayConnection 一致"""

    def __init__(self, on_send: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._on_send = on_send
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send_message(self, message) -> None:
        if self.closed:
            raise TransportError("gateway connection is closed")
        if isinstance(message, BaseModel):
            frame = json.loads(GatewayProtocol.encode(message))
        else:
            frame = dict(message)
        self.sent.append(frame)
        if self._on_send:
            self._on_send(frame)

    async def receive(self) -> Optional[str]:
        item = await self._inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def feed(self, frame: Dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(frame, ensure_ascii=False))

    def feed_raw(self, data: str) -> None:
        self._inbox.put_nowait(data)

    def drop(self, error: Optional[Exception] = None) -> None:
        """模拟对端断开; error 为空时表示正常关闭"""
        self._inbox.put_nowait(error)


class FakeGateway:
    """脚本化的 Moltbot 网关

    handlers 按 method 响应请求; 未注册的 connect 默认鉴权成功。
    """

    def __init__(self, send_challenge: bool = True, auth_ok: bool = True):
        self.send_challenge = send_challenge
        self.auth_ok = auth_ok
        self.conn = FakeConnection(self._on_request)
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self.connected_url: Optional[str] = None

    async def connector(self, url: str, timeout: Optional[float]) -> FakeConnection:
        self.connected_url = url
        if self.send_challenge:
            self.emit("connect.challenge", {"nonce": "n-1", "ts": 1})
        return self.conn

    def _on_request(self, frame: Dict[str, Any]) -> None:
        handler = self.handlers.get(frame["method"])
        if handler is not None:
            handler(frame)
        elif frame["method"] == "connect":
            if self.auth_ok:
                self.respond(frame, payload={"type": "hello-ok"})
            else:
                self.respond(frame, ok=False, error={"code": "UNAUTHORIZED", "message": "bad token"})

    def requests(self, method: str) -> List[Dict[str, Any]]:
        return [f for f in self.conn.sent if f.get("method") == method]

    def respond(self, frame: Dict[str, Any], ok: bool = True, payload=None, error=None) -> None:
        response: Dict[str, Any] = {"type": "res", "id": frame["id"], "ok": ok}
        if payload is not None:
            response["payload"] = payload
        if error is not None:
            response["error"] = error
        self.conn.feed(response)

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        frame: Dict[str, Any] = {"type": "event", "event": event}
        if payload is not None:
            frame["payload"] = payload
        self.conn.feed(frame)

    def assistant(self, run_id: str, delta: str) -> None:
        self.emit("agent", {"runId": run_id, "stream": "assistant", "data": {"delta": delta}})

    def lifecycle_end(self, run_id: str) -> None:
        self.emit("agent", {"runId": run_id, "stream": "lifecycle", "data": {"phase": "end"}})

    def reply_to_agent(self, run_id: str, deltas: List[str], end: bool = True) -> None:
        """agent 请求被接受后立即推送 deltas"""

        def handler(frame: Dict[str, Any]) -> None:
            self.respond(frame, payload={"runId": run_id, "acceptedAt": 1})
            for delta in deltas:
                self.assistant(run_id, delta)
            if end:
                self.lifecycle_end(run_id)

        self.handlers["agent"] = handler


class FakeChannel(BaseChannel):
    """记录所有出站操作的通道"""

    def __init__(self, name: str = "fake", connect_ok: bool = True):
        super().__init__(name, ChannelType.FEISHU, ChannelConfig(enabled=True))
        self.connect_ok = connect_ok
        self.delivered: List[tuple] = []
        self.updated: List[tuple] = []
        self.retracted: List[str] = []
        self.fail_deliver = False
        self.fail_update = False
        self.fail_retract = False
        self._next_handle = 0

    async def connect(self) -> bool:
        return self.connect_ok

    async def disconnect(self) -> bool:
        return True

    async def deliver(self, chat_id: str, text: str) -> str:
        if self.fail_deliver:
            raise ChannelError("deliver failed")
        self._next_handle += 1
        self.delivered.append((chat_id, text))
        return f"om_{self._next_handle}"

    async def update(self, message_handle: str, text: str) -> None:
        if self.fail_update:
            raise ChannelError("update failed")
        self.updated.append((message_handle, text))

    async def retract(self, message_handle: str) -> None:
        if self.fail_retract:
            raise ChannelError("retract failed")
        self.retracted.append(message_handle)

    def texts(self) -> List[str]:
        return [text for _, text in self.delivered]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(gateway):
    """已完成握手的网关客户端"""
    gw_client = GatewayClient(
        "ws://127.0.0.1:18789",
        "test-token",
        handshake_timeout=1.0,
        request_timeout=1.0,
        connector=gateway.connector,
    )
    await gw_client.connect()
    yield gw_client
    await gw_client.close()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch, tmp_path):
    """每个测试前清理桥接相关环境变量, 并隔离 HOME 和 .env"""
    for name in LEGACY_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    yield
