"""模型调用的请求/响应结构。

一轮对话中数据的流向：

1. LoopEngine 把系统提示词与会话历史转换为 ChatMessage 列表，
   连同 ToolRegistry 导出的 ToolDef 一起组成 ChatRequest。
2. ProviderClient（目前是 OpenRouterClient）把 ChatRequest 序列化为
   chat/completions 请求，再把响应解析回 ChatResult。
3. LoopEngine 读取 ChatResult.message：有 tool_calls 就执行工具，
   并以 role="tool" 的消息回填观察结果；否则作为最终回答写入会话。
   每次调用的 ChatUsage 在本轮内累加后记到会话的 token 计数上。

会话摘要（/compact）与自动标签也复用同一套结构，只是不带工具。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    from agent_runtime.tools.definitions import ToolCall, ToolDef


Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ChatMessage:
    """发给模型或由模型返回的一条消息。

    assistant 消息可能携带 tool_calls；tool 消息通过 tool_call_id
    对应到触发它的那次调用。meta 只在本地使用，不会发送。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)
    tool_calls: Optional[List["ToolCall"]] = None
    tool_call_id: Optional[str] = None


@dataclass
class ChatRequest:
    provider: str  # 如 "openrouter"
    model: str  # OpenRouter 模型 ID，如 "moonshotai/kimi-k2"
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None
    tools: Optional[List["ToolDef"]] = None
    # 摘要和标签请求传 "none"
    tool_choice: Literal["auto", "none", "required"] = "auto"


@dataclass
class ChatUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """解析后的模型响应。raw 保留原始 JSON，仅用于排查问题。"""

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def message(self) -> ChatMessage:
        """首个候选消息；没有候选时返回空的助手消息。"""
        if not self.choices:
            return ChatMessage(role="assistant", content="")
        return self.choices[0].message
