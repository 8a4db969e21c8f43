"""Startup script for the Feishu <-> Moltbot bridge."""

import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from api_server import create_app
from bridge import Bridge, build_aggregator
from channels.base import ChannelConfig, ChannelError
from channels.feishu_channel import FeishuChannel
from config import BridgeConfig, ConfigError, load_config, mask_secret
from gateway import GatewayClient, GatewayError
from utils.logger import setup_logger

__version__ = "0.2.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moltbot-feishu-bridge",
        description="Bridge Feishu chats to a Moltbot gateway agent",
    )
    parser.add_argument("--feishu-app-id", help="Feishu App ID")
    parser.add_argument("--feishu-app-secret", help="Feishu App Secret")
    parser.add_argument("--feishu-secret-path", help="File holding the Feishu App Secret")
    parser.add_argument("--moltbot-config", help="Path to moltbot.json")
    parser.add_argument("--agent-id", help="Agent to invoke (default: main)")
    parser.add_argument("--gateway-port", type=int, help="Gateway port (default: 18789)")
    parser.add_argument("--gateway-token", help="Gateway auth token")
    parser.add_argument("--thinking-ms", type=int, help="Placeholder delay in ms, 0 disables it")
    parser.add_argument("--reply-mode", choices=["stream", "single"], help="Reply emission mode")
    parser.add_argument("--host", help="HTTP bind host for Feishu callbacks")
    parser.add_argument("--port", type=int, help="HTTP bind port for Feishu callbacks")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "feishu": {
            "app_id": args.feishu_app_id,
            "app_secret": args.feishu_app_secret,
            "app_secret_path": args.feishu_secret_path,
        },
        "gateway": {
            "moltbot_config_path": args.moltbot_config,
            "agent_id": args.agent_id,
            "port": args.gateway_port,
            "token": args.gateway_token,
        },
        "reply": {
            "thinking_threshold_ms": args.thinking_ms,
            "mode": args.reply_mode,
        },
        "server": {
            "host": args.host,
            "port": args.port,
        },
    }


def build_bridge(cfg: BridgeConfig):
    """按配置组装通道、网关客户端、聚合器和桥接器"""
    channel = FeishuChannel(
        ChannelConfig(
            enabled=True,
            app_key=cfg.feishu.app_id,
            app_secret=cfg.feishu.app_secret,
            api_endpoint=cfg.feishu.api_base,
            verification_token=cfg.feishu.verification_token,
        )
    )
    client = GatewayClient(
        cfg.gateway.url,
        cfg.gateway.token,
        cfg.gateway.agent_id,
        handshake_timeout=cfg.gateway.handshake_timeout_s,
        request_timeout=cfg.gateway.request_timeout_s,
        locale=cfg.gateway.locale,
        fragment_capacity=cfg.gateway.fragment_queue_size,
    )
    aggregator = build_aggregator(
        cfg.reply.mode,
        idle_window=cfg.reply.idle_window_s,
        global_timeout=cfg.reply.global_timeout_s,
        thinking_threshold=cfg.reply.thinking_threshold_ms / 1000.0,
        placeholder_text=cfg.reply.placeholder_text,
        no_reply_token=cfg.reply.no_reply_token,
    )
    bridge = Bridge(client, channel, aggregator, connect_timeout=cfg.gateway.connect_timeout_s)
    return bridge, channel


async def serve(cfg: BridgeConfig, logger) -> int:
    bridge, channel = build_bridge(cfg)
    try:
        await bridge.start()
    except (GatewayError, ChannelError) as e:
        logger.error(f"Failed to start bridge: {e}")
        await bridge.stop()
        return 1

    app = create_app(bridge, channel, events_path=cfg.server.events_path)
    server = uvicorn.Server(
        uvicorn.Config(app, host=cfg.server.host, port=cfg.server.port, log_level="info", log_config=None)
    )
    logger.info(f"Feishu callback : http://{cfg.server.host}:{cfg.server.port}{cfg.server.events_path}")
    try:
        await server.serve()
    finally:
        await bridge.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(overrides_from_args(args))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logger = setup_logger(cfg.system.log_dir, cfg.system.log_level)

    logger.info("=" * 60)
    logger.info("Moltbot Feishu Bridge")
    logger.info("=" * 60)
    logger.info(f"Feishu App ID : {cfg.feishu.app_id}")
    logger.info(f"Gateway       : {cfg.gateway.url} (token {mask_secret(cfg.gateway.token)})")
    logger.info(f"Agent ID      : {cfg.gateway.agent_id}")
    logger.info(f"Reply mode    : {cfg.reply.mode}")

    try:
        return asyncio.run(serve(cfg, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
