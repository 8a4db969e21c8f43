from __future__ import annotations

from fastapi import APIRouter, Request


router = APIRouter()


@router.get("/health")
async def get_health(request: Request):
    """获取桥接服务状态"""
    bridge = request.app.state.bridge
    status = bridge.get_status()
    return {
        "status": "running" if status["running"] else "stopped",
        "gateway_connected": status["gateway_connected"],
        "active_turns": status["active_turns"],
        "active_runs": status["active_runs"],
        "channel": status["channel"],
    }
