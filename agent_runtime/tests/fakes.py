"""测试共用的桩对象：脚本化的 Provider、简单工具与配置桩。"""

import threading
from typing import Any, Dict, List, Tuple

from agent_runtime.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage
from agent_runtime.tools.definitions import Tool, ToolCall, ToolOutput, ToolParam


class SettingsStub:
    default_provider = "openrouter"
    default_model = "test-model"
    openrouter_api_key = "sk-test-key-123"
    openrouter_base_url = "https://openrouter.test/api/v1"
    temperature = 0.3
    http_timeout = 1.0
    max_iterations = 5
    max_tool_retries = 3
    storage_root = ".storage"
    shell_timeout = 10.0
    searxng_url = "http://searx.test"
    auto_label_enabled = False
    auto_label_model = None
    compact_keep_recent = 5
    telegram_bot_token = None
    telegram_allowed_users: List[str] = []
    telegram_poll_timeout = 1
    shutdown_timeout = 1.0


def text_result(content: str, prompt_tokens: int = 1, completion_tokens: int = 1) -> ChatResult:
    return ChatResult(
        provider="fake",
        model="test-model",
        choices=[ChatChoice(index=0, message=ChatMessage(role="assistant", content=content), finish_reason="stop")],
        usage=ChatUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def tool_call_result(*calls: Tuple[str, Dict[str, Any]]) -> ChatResult:
    tool_calls = [ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls)]
    message = ChatMessage(role="assistant", content="", tool_calls=tool_calls)
    return ChatResult(
        provider="fake",
        model="test-model",
        choices=[ChatChoice(index=0, message=message, finish_reason="tool_calls")],
        usage=ChatUsage(prompt_tokens=2, completion_tokens=1, total_tokens=3),
    )


class FakeProvider:
    """按顺序返回预设结果；预设用完后返回 default 文本。"""

    name = "fake"

    def __init__(self, responses=None, default: str = "ok"):
        self.requests: List[ChatRequest] = []
        self._responses = list(responses or [])
        self._default = default
        self._lock = threading.Lock()

    def chat(self, req: ChatRequest) -> ChatResult:
        with self._lock:
            self.requests.append(req)
            item = self._responses.pop(0) if self._responses else None
        if item is None:
            return text_result(self._default)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(req)
        return item


class BlockingProvider(FakeProvider):
    """进入 chat() 后阻塞，直到测试调用 release.set()。"""

    def __init__(self, default: str = "late answer"):
        super().__init__(default=default)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def chat(self, req: ChatRequest) -> ChatResult:
        with self._lock:
            self.calls += 1
        self.entered.set()
        self.release.wait(5)
        return super().chat(req)


class EchoTool(Tool):
    name = "echo"
    description = "Echo the given text"
    params = {
        "text": ToolParam(name="text", description="Text to echo", required=True, schema={"type": "string"}),
    }

    def execute(self, text: str = "", **_: Any) -> ToolOutput:
        return ToolOutput(success=True, data={"text": text}, text=text)
