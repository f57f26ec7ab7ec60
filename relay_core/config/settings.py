"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
后端地址既可以分别给出 BACKEND_HTTP / BACKEND_WS，也可以只给 BACKEND_ORIGIN，
由这里推导出会话创建接口与流式 WebSocket 地址。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("RELAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class RelaySettings(BaseSettings):
    """中继服务配置。"""

    # ---- 后端服务 ----
    backend_origin: str = Field(
        default="http://localhost:3000/",
        validation_alias=AliasChoices("backend_origin", "app_backend_origin"),
        description="后端服务根地址，用于推导 HTTP 与 WebSocket 地址",
    )
    backend_http: Optional[str] = Field(default=None, description="会话创建接口，缺省为 <origin>/api/chat")
    backend_ws: Optional[str] = Field(default=None, description="流式 WebSocket 地址，缺省为 ws(s)://<origin>/")
    http_connect_timeout: float = Field(default=5.0, gt=0, description="会话创建请求的连接超时（秒）")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 读超时（秒）")
    exchange_timeout: float = Field(default=120.0, gt=0, description="单次流式交换的最长等待时间（秒）")

    # ---- 编排 ----
    history_size: int = Field(default=50, ge=1, le=10_000, description="共享历史缓冲区容量")
    notify_session_failure: bool = Field(
        default=True,
        description="会话创建失败时是否广播 error 事件（关闭则仅记录日志并丢弃任务）",
    )

    # ---- HTTP 服务 ----
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=8080, ge=1, le=65535, description="监听端口")
    sse_queue_size: int = Field(default=256, ge=1, description="每个 SSE 订阅者的缓冲帧数")
    sse_keepalive: float = Field(default=15.0, gt=0, description="SSE 空闲保活间隔（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否截断日志内容")

    # ---- Discord ----
    discord_token: Optional[str] = Field(default=None, description="Discord Bot Token")
    discord_channel_id: Optional[str] = Field(default=None, description="指定频道 ID")
    discord_api_base: str = Field(default="https://discord.com/api/v10", description="Discord REST 基础URL")

    # ---- GitHub ----
    github_token: Optional[str] = Field(default=None, description="GitHub 访问令牌")
    github_webhook_secret: Optional[str] = Field(default=None, description="Webhook 签名密钥")
    github_bot_login: Optional[str] = Field(default=None, description="机器人账号登录名，缺省时通过 API 查询")
    github_api_base: str = Field(default="https://api.github.com", description="GitHub REST 基础URL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = (v or "INFO").upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

    @field_validator("discord_token", "github_token", "github_webhook_secret", "discord_channel_id")
    @classmethod
    def blank_as_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    @property
    def session_url(self) -> str:
        """会话创建接口地址。"""

        return self.backend_http or urljoin(self.backend_origin, "api/chat")

    @property
    def stream_url(self) -> str:
        """流式 WebSocket 地址（http→ws, https→wss）。"""

        if self.backend_ws:
            return self.backend_ws
        origin = self.backend_origin
        if origin.startswith("http"):
            origin = "ws" + origin[len("http"):]
        return urljoin(origin, "/")

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_token)

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_token and self.github_webhook_secret)


settings = RelaySettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = RelaySettings
