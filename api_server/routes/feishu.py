from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from loguru import logger

DEFAULT_EVENTS_PATH = "/feishu/events"


async def feishu_events(request: Request):
    """飞书事件订阅回调 (url_verification + im.message.receive_v1)"""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="event body must be an object")

    channel = request.app.state.channel
    result = await channel.handle_event(body)
    if result.get("code", 0) != 0:
        logger.warning(f"Feishu event rejected: {result.get('msg')}")
    return result


def build_router(events_path: str = DEFAULT_EVENTS_PATH) -> APIRouter:
    """回调路径来自 server.events_path 配置"""
    router = APIRouter()
    router.add_api_route(events_path, feishu_events, methods=["POST"])
    return router
