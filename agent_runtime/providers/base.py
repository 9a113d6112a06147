"""Provider 抽象接口。

LoopEngine 不直接依赖具体厂商的 HTTP SDK，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenRouterClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。
"""

from typing import Protocol
from agent_runtime.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult，
      其中包含文本回答或工具调用请求，以及 token 用量。
    """

    name: str

    def chat(self, req: ChatRequest) -> ChatResult:
        ...
