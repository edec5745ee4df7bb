"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
所有组件都通过构造参数接收 settings 对象（鸭子类型），默认使用本模块的全局 settings。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AVS_CONFIG_FILE")
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


class AvsSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 端点 ----
    endpoint_url: str = Field(
        default="https://avs-alexa-na.amazon.com/v20160207",
        description="服务基础URL，各路径拼接在其后",
    )
    directives_path: str = Field(default="/directives", description="下行通道路径")
    events_path: str = Field(default="/events", description="事件上报路径")
    ping_path: str = Field(default="/ping", description="心跳路径")

    # ---- HTTP ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    downchannel_read_timeout: Optional[float] = Field(
        default=None,
        description="下行通道读超时（秒），None 表示不限制",
    )
    user_agent: str = Field(default="avs-core/0.1", description="请求 User-Agent")
    request_id_header: str = Field(
        default="x-amzn-requestid",
        description="响应中携带请求ID的头部名称",
    )

    # ---- 流式请求体 ----
    conduit_buffer_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="请求体管道的缓冲上限（字节），写满后生产者阻塞",
    )
    audio_chunk_size: int = Field(default=8192, ge=1, description="每次读取音频的字节数")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="AVS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("endpoint_url")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("endpoint_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("directives_path", "events_path", "ping_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"

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


settings = AvsSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = AvsSettings
