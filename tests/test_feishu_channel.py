import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from channels.base import ChannelConfig, ChannelError, Message
from channels.feishu_channel import FeishuChannel
from channels.filters import MessageDeduplicator, should_respond_in_group, strip_mentions

API = "https://open.feishu.test/open-apis"


class _FakeResponse:
    def __init__(self, body: Any):
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type: Optional[str] = "application/json"):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FakeSession:
    """按 (method, path) 返回预设响应的 aiohttp 会话替身"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.routes: Dict[tuple, Any] = {
            ("POST", "/auth/v3/tenant_access_token/internal"): {
                "code": 0,
                "tenant_access_token": "t-123",
                "expire": 7200,
            },
        }
        self.closed = False

    def request(self, method, url, headers=None, params=None, json=None):
        path = url[len(API):]
        self.calls.append({"method": method, "path": path, "headers": headers, "params": params, "json": json})
        body = self.routes.get((method, path), {"code": 99991, "msg": "not found"})
        if isinstance(body, aiohttp.ClientError):
            raise body
        return _FakeResponse(body)

    async def close(self):
        self.closed = True


def _channel(session=None, verification_token=None) -> FeishuChannel:
    config = ChannelConfig(
        app_key="cli_app",
        app_secret="s3cret",
        api_endpoint=API,
        verification_token=verification_token,
    )
    return FeishuChannel(config, session=session)


def _message_event(
    text: str,
    message_id: str = "om_1",
    chat_type: str = "p2p",
    mentions: Optional[list] = None,
    message_type: str = "text",
    token: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "schema": "2.0",
        "header": {"event_type": "im.message.receive_v1", "token": token},
        "event": {
            "sender": {"sender_id": {"open_id": "ou_user"}},
            "message": {
                "message_id": message_id,
                "chat_id": "oc_chat",
                "chat_type": chat_type,
                "message_type": message_type,
                "content": json.dumps({"text": text}, ensure_ascii=False),
                "mentions": mentions or [],
                "create_time": "1700000000000",
            },
        },
    }


# ============ 过滤 ============

def test_deduplicator_expires_entries():
    now = [0.0]
    dedup = MessageDeduplicator(ttl_seconds=10, clock=lambda: now[0])

    assert dedup.is_duplicate("om_1") is False
    assert dedup.is_duplicate("om_1") is True
    now[0] = 11.0
    assert dedup.is_duplicate("om_1") is False
    assert len(dedup) == 1


@pytest.mark.parametrize(
    "text, mentions, expected",
    [
        ("今天天气不错", ["@_user_1"], True),
        ("这个怎么弄？", None, True),
        ("is it done?", None, True),
        ("How does this work", None, True),
        ("帮我看下日志", None, True),
        ("翻译一下这句话", None, True),
        ("Moltbot 在吗", None, True),
        ("助手 早上好", None, True),
        ("哈哈哈", None, False),
        ("ok", [], False),
    ],
)
def test_group_response_heuristics(text, mentions, expected):
    assert should_respond_in_group(text, mentions) is expected


def test_strip_mentions():
    assert strip_mentions("@_user_1 你好 @_user_22 ") == "你好"
    assert strip_mentions("@_user_1") == ""


# ============ 事件回调 ============

@pytest.mark.asyncio
async def test_url_verification_echoes_challenge():
    channel = _channel(verification_token="vt")
    result = await channel.handle_event({"type": "url_verification", "challenge": "abc", "token": "vt"})
    assert result == {"challenge": "abc"}

    rejected = await channel.handle_event({"type": "url_verification", "challenge": "abc", "token": "bad"})
    assert rejected["code"] == 1


@pytest.mark.asyncio
async def test_encrypted_events_are_rejected():
    channel = _channel()
    result = await channel.handle_event({"encrypt": "xxxx"})
    assert result["code"] == 1


@pytest.mark.asyncio
async def test_message_event_is_emitted():
    channel = _channel(verification_token="vt")
    received: List[Message] = []
    channel.on_message(received.append)

    result = await channel.handle_event(_message_event("@_user_1 你好", token="vt", mentions=[{"key": "@_user_1"}]))
    assert result == {"code": 0}
    await asyncio.sleep(0.01)

    assert len(received) == 1
    message = received[0]
    assert message.chat_id == "oc_chat"
    assert message.content == "你好"
    assert message.sender_id == "ou_user"
    assert message.mentions == ["@_user_1"]


@pytest.mark.asyncio
async def test_event_with_wrong_token_is_dropped():
    channel = _channel(verification_token="vt")
    received = []
    channel.on_message(received.append)

    result = await channel.handle_event(_message_event("hello?", token="other"))
    await asyncio.sleep(0.01)

    assert result["code"] == 1
    assert received == []


def test_parse_skips_duplicates_and_non_text():
    channel = _channel()
    event = _message_event("hello")["event"]

    assert channel.parse_message_event(event) is not None
    assert channel.parse_message_event(event) is None

    image = _message_event("", message_id="om_2", message_type="image")["event"]
    assert channel.parse_message_event(image) is None


def test_parse_filters_idle_group_chatter():
    channel = _channel()
    chatter = _message_event("哈哈哈", message_id="om_3", chat_type="group")["event"]
    question = _message_event("为什么会这样？", message_id="om_4", chat_type="group")["event"]

    assert channel.parse_message_event(chatter) is None
    message = channel.parse_message_event(question)
    assert message is not None
    assert message.chat_type == "group"


def test_parse_ignores_mention_only_message():
    channel = _channel()
    event = _message_event("@_user_1", message_id="om_5", mentions=[{"key": "@_user_1"}])["event"]
    assert channel.parse_message_event(event) is None


# ============ 出站 ============

@pytest.mark.asyncio
async def test_deliver_fetches_token_and_returns_message_id():
    session = _FakeSession()
    session.routes[("POST", "/im/v1/messages")] = {"code": 0, "data": {"message_id": "om_out"}}
    channel = _channel(session=session)

    assert await channel.start() is True
    handle = await channel.deliver("oc_chat", "你好")

    assert handle == "om_out"
    token_call, send_call = session.calls
    assert token_call["json"] == {"app_id": "cli_app", "app_secret": "s3cret"}
    assert send_call["params"] == {"receive_id_type": "chat_id"}
    assert send_call["headers"]["Authorization"] == "Bearer t-123"
    assert json.loads(send_call["json"]["content"]) == {"text": "你好"}

    await channel.stop()
    assert session.closed is False


@pytest.mark.asyncio
async def test_update_and_retract_use_message_path():
    session = _FakeSession()
    session.routes[("PUT", "/im/v1/messages/om_9")] = {"code": 0}
    session.routes[("DELETE", "/im/v1/messages/om_9")] = {"code": 0}
    channel = _channel(session=session)
    await channel.connect()

    await channel.update("om_9", "final")
    await channel.retract("om_9")

    methods = [(c["method"], c["path"]) for c in session.calls[1:]]
    assert methods == [("PUT", "/im/v1/messages/om_9"), ("DELETE", "/im/v1/messages/om_9")]


@pytest.mark.asyncio
async def test_api_error_raises_channel_error():
    session = _FakeSession()
    session.routes[("POST", "/im/v1/messages")] = {"code": 230002, "msg": "bot not in chat"}
    channel = _channel(session=session)
    await channel.connect()

    with pytest.raises(ChannelError, match="bot not in chat"):
        await channel.deliver("oc_chat", "hi")


@pytest.mark.asyncio
async def test_network_error_raises_channel_error():
    session = _FakeSession()
    session.routes[("DELETE", "/im/v1/messages/om_9")] = aiohttp.ClientConnectionError("reset")
    channel = _channel(session=session)
    await channel.connect()

    with pytest.raises(ChannelError):
        await channel.retract("om_9")


@pytest.mark.asyncio
async def test_connect_fails_on_bad_credentials():
    session = _FakeSession()
    session.routes[("POST", "/auth/v3/tenant_access_token/internal")] = {"code": 10003, "msg": "invalid app_secret"}
    channel = _channel(session=session)

    assert await channel.start() is False
    assert not channel.is_running
