"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 提供具体实现 (openrouter_client)。
"""

from typing import Optional

from agent_runtime.config.settings import settings
from agent_runtime.domain.exceptions import ValidationError
from agent_runtime.providers.base import ProviderClient
from agent_runtime.providers.openrouter_client import OpenRouterClient


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openrouter")).lower()
    if provider_name == "openrouter":
        return OpenRouterClient(cfg)
    raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider_name!r}")

