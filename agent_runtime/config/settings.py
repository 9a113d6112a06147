"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
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


class RuntimeSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(default="openrouter", description="默认使用的 Provider 名称")
    default_model: str = Field(
        default="moonshotai/kimi-k2",
        description="Provider 侧的模型 ID",
    )
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter API 基础URL",
    )
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="生成温度")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 推理循环 ----
    max_iterations: int = Field(default=20, ge=1, description="单轮对话内推理迭代上限")
    max_tool_retries: int = Field(default=3, ge=1, description="单次工具调用的最大尝试次数")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 工具 ----
    shell_timeout: float = Field(default=120.0, ge=1.0, description="shell 工具超时时间（秒）")
    searxng_url: str = Field(default="http://localhost:8080", description="SearXNG 实例地址")

    # ---- 功能开关 ----
    auto_label_enabled: bool = Field(default=True, description="是否自动为会话生成标签")
    auto_label_model: Optional[str] = Field(default=None, description="自动标签使用的模型，默认同主模型")
    compact_keep_recent: int = Field(default=5, ge=1, description="/compact 保留的最近消息数")

    # ---- 通道 ----
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram Bot Token")
    telegram_allowed_users: List[str] = Field(
        default_factory=list,
        description="允许使用 Bot 的 Telegram 用户名，空列表表示拒绝所有人",
    )
    telegram_poll_timeout: int = Field(default=30, ge=1, description="getUpdates 长轮询超时（秒）")
    shutdown_timeout: float = Field(default=5.0, ge=0.1, description="通道线程关闭等待时间（秒）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("openrouter_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
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
            _load_config_from_yaml,
            file_secret_settings,
        )


settings = RuntimeSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = type(settings)
