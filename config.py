from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_MOLTBOT_CONFIG = "~/.moltbot/moltbot.json"
DEFAULT_SECRET_PATH = "~/.moltbot/secrets/feishu_app_secret"


class ConfigError(ValueError):
    """Required configuration is missing or invalid."""


class FeishuConfig(BaseModel):
    app_id: str = Field(default="")
    app_secret: str = Field(default="")
    app_secret_path: str = Field(default=DEFAULT_SECRET_PATH)
    verification_token: Optional[str] = Field(default=None)
    api_base: str = Field(default="https://open.feishu.cn/open-apis")


class GatewayConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    token: str = Field(default="")
    agent_id: str = Field(default="main")
    moltbot_config_path: str = Field(default=DEFAULT_MOLTBOT_CONFIG)
    locale: str = Field(default="zh-CN")
    connect_timeout_s: float = Field(default=10.0, gt=0)
    handshake_timeout_s: float = Field(default=5.0, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0)
    fragment_queue_size: int = Field(default=100, ge=1)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port or DEFAULT_GATEWAY_PORT}"


class ReplyConfig(BaseModel):
    mode: Literal["stream", "single"] = Field(default="stream")
    idle_window_s: float = Field(default=2.0, gt=0)
    global_timeout_s: float = Field(default=300.0, gt=0)
    thinking_threshold_ms: int = Field(default=2500, ge=0)
    placeholder_text: str = Field(default="正在思考...")
    no_reply_token: str = Field(default="NO_REPLY")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    events_path: str = Field(default="/feishu/events")

    @field_validator("events_path")
    @classmethod
    def validate_events_path(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith("/") else "/" + v


class SystemConfig(BaseModel):
    log_dir: Path = Field(default_factory=lambda: Path("logs"))
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class BridgeConfig(BaseSettings):
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


# Environment names used by earlier deployments of the bridge.
LEGACY_ENV = {
    "FEISHU_APP_ID": ("feishu", "app_id"),
    "FEISHU_APP_SECRET": ("feishu", "app_secret"),
    "FEISHU_APP_SECRET_PATH": ("feishu", "app_secret_path"),
    "MOLTBOT_CONFIG_PATH": ("gateway", "moltbot_config_path"),
    "MOLTBOT_AGENT_ID": ("gateway", "agent_id"),
    "MOLTBOT_GATEWAY_PORT": ("gateway", "port"),
    "MOLTBOT_GATEWAY_TOKEN": ("gateway", "token"),
    "FEISHU_THINKING_THRESHOLD_MS": ("reply", "thinking_threshold_ms"),
}

# moltbot.json is read before the environment for these gateway fields.
GATEWAY_FILE_FIRST = ("port", "token")


def expand_path(path: str) -> Path:
    return Path(path).expanduser()


def mask_secret(value: Optional[str]) -> str:
    if not value or len(value) <= 4:
        return "****"
    return value[:4] + "****"


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        elif v is not None:
            target[k] = v
    return target


def _apply_legacy_env(data: Dict[str, Any]) -> None:
    """Legacy names only fill values the nested variables left unset."""
    defaults = BridgeConfig.model_construct().model_dump()
    for env_name, (section, field) in LEGACY_ENV.items():
        value = os.getenv(env_name)
        if not value:
            continue
        section_data = data.setdefault(section, {})
        if section_data.get(field) in (None, "", defaults[section][field]):
            section_data[field] = value


def _read_moltbot_config(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read Moltbot config {path}: {e}")
        return {}
    gateway = raw.get("gateway") if isinstance(raw, dict) else None
    return gateway if isinstance(gateway, dict) else {}


def _read_secret_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def load_config(overrides: Optional[Dict[str, Any]] = None) -> BridgeConfig:
    """Resolve configuration.

    Precedence: ``overrides`` (command line) > environment > defaults. The
    gateway port and token are the exception: moltbot.json is consulted
    before the environment for those two, and the port falls back to
    ``DEFAULT_GATEWAY_PORT``. Raises ``ConfigError`` when the Feishu
    credentials or the gateway token cannot be found.
    """
    merged_data = BridgeConfig().model_dump()
    _apply_legacy_env(merged_data)
    env_gateway = {field: merged_data["gateway"].pop(field, None) for field in GATEWAY_FILE_FIRST}
    _deep_merge(merged_data, overrides or {})

    gateway = merged_data["gateway"]
    if gateway.get("port") is None or not gateway.get("token"):
        moltbot = _read_moltbot_config(expand_path(str(gateway["moltbot_config_path"])))
        if gateway.get("port") is None and isinstance(moltbot.get("port"), int):
            gateway["port"] = moltbot["port"]
        if not gateway.get("token") and moltbot.get("auth"):
            gateway["token"] = str(moltbot["auth"])
    for field, value in env_gateway.items():
        if gateway.get(field) in (None, "") and value not in (None, ""):
            gateway[field] = value
    if gateway.get("port") is None:
        gateway["port"] = DEFAULT_GATEWAY_PORT

    cfg = BridgeConfig(**merged_data)

    if not cfg.feishu.app_secret:
        cfg.feishu.app_secret = _read_secret_file(expand_path(cfg.feishu.app_secret_path))

    if not cfg.feishu.app_id:
        raise ConfigError("Feishu App ID is not configured: set --feishu-app-id or FEISHU_APP_ID")
    if not cfg.feishu.app_secret:
        raise ConfigError(
            "Feishu App Secret is not configured: set --feishu-app-secret, "
            "FEISHU_APP_SECRET or FEISHU_APP_SECRET_PATH"
        )
    if not cfg.gateway.token:
        raise ConfigError(
            "Gateway token is not configured: set --gateway-token, "
            "MOLTBOT_GATEWAY_TOKEN or gateway.auth in moltbot.json"
        )
    return cfg
