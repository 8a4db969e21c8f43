"""
HTTP 入口 - 飞书事件回调与健康检查
"""
from fastapi import FastAPI

from bridge import Bridge
from channels.feishu_channel import FeishuChannel

from .routes.feishu import DEFAULT_EVENTS_PATH, build_router
from .routes.status import router as status_router


def create_app(bridge: Bridge, channel: FeishuChannel, events_path: str = DEFAULT_EVENTS_PATH) -> FastAPI:
    """构建 FastAPI 应用; bridge 的启动和停止由调用方负责"""
    app = FastAPI(
        title="Moltbot Feishu Bridge",
        description="飞书 <-> Moltbot 网关桥接服务",
        version="0.2.0",
    )
    app.state.bridge = bridge
    app.state.channel = channel

    app.include_router(build_router(events_path))
    app.include_router(status_router)
    return app
