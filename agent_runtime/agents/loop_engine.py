"""推理/行动循环引擎。

一次 run() 对应一轮对话：追加用户消息，然后交替调用模型与工具，
直到模型给出不含工具调用的最终回答，或迭代次数耗尽。
结果以 LoopOutcome 返回，迭代耗尽是其中一种明确的 kind。
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from agent_runtime.conversations.auto_label import AutoLabeler
from agent_runtime.conversations.manager import ConversationManager
from agent_runtime.domain.conversation import Conversation
from agent_runtime.domain.exceptions import MaxIterationsExceeded, ToolExecutionError, UnknownTool
from agent_runtime.domain.models import ChatMessage, ChatRequest, ChatResult
from agent_runtime.infrastructure.logging.logger import logger
from agent_runtime.providers.base import ProviderClient
from agent_runtime.tools.definitions import ToolCall, ToolResult
from agent_runtime.tools.registry import ToolRegistry

MAX_TOOL_RETRIES = 3
VERBOSE_TRUNCATE = 500

VerboseCallback = Callable[[str], None]
SystemPromptBuilder = Callable[[Conversation], str]


@dataclass
class LoopConfig:
    model: str
    max_iterations: int = 20
    max_tool_retries: int = MAX_TOOL_RETRIES
    temperature: float = 0.3


@dataclass
class LoopOutcome:
    """一轮循环的结果。

    kind:
        - "final": 模型给出最终回答，content 为回答文本。
        - "max_iterations": 迭代耗尽，limit 为配置的上限。
        - "interrupted": 在安全点观察到取消信号。
    """

    kind: Literal["final", "max_iterations", "interrupted"]
    content: str = ""
    limit: Optional[int] = None
    iterations: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.kind == "final"

    @property
    def message(self) -> str:
        if self.kind == "max_iterations":
            return MaxIterationsExceeded(self.limit or 0).message
        if self.kind == "interrupted":
            return "Interrupted"
        return self.content

    def unwrap(self) -> str:
        """返回最终回答；迭代耗尽时抛出 MaxIterationsExceeded。"""
        if self.kind == "max_iterations":
            raise MaxIterationsExceeded(self.limit or 0)
        return self.content


class LoopEngine:
    def __init__(
        self,
        manager: ConversationManager,
        provider_client: ProviderClient,
        tools: ToolRegistry,
        config: LoopConfig,
        system_prompt: Optional[SystemPromptBuilder] = None,
        auto_labeler: Optional[AutoLabeler] = None,
    ):
        self._manager = manager
        self._provider_client = provider_client
        self._tools = tools
        self._config = config
        self._system_prompt = system_prompt
        self._auto_labeler = auto_labeler

    @property
    def config(self) -> LoopConfig:
        return self._config

    def run(
        self,
        conversation: Conversation,
        user_input: str,
        max_iterations: Optional[int] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        verbose_callback: Optional[VerboseCallback] = None,
    ) -> LoopOutcome:
        """执行一轮推理/行动循环。

        Args:
            conversation: 目标会话（调用方负责同一会话的串行化）
            user_input: 用户输入
            max_iterations: 迭代上限，默认取配置
            cancel_event: 取消信号，在每次模型调用与工具执行前检查
            verbose_callback: 会话开启 verbose 时接收工具调用与结果的展示文本

        Returns:
            LoopOutcome
        """
        limit = self._config.max_iterations if max_iterations is None else max_iterations
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation.id,
        }
        verbose = verbose_callback if conversation.verbose else None

        self._manager.append(conversation, "user", user_input)
        messages = self._build_messages(conversation)
        tool_defs = self._tools.tool_defs() or None
        input_tokens = 0
        output_tokens = 0

        for iteration in range(1, limit + 1):
            if self._cancelled(cancel_event):
                return self._interrupted(log_ctx, iteration - 1, input_tokens, output_tokens)
            self._log(logging.INFO, "Loop iteration", log_ctx, iteration=iteration, max_iterations=limit)

            req = ChatRequest(
                provider=self._provider_client.name,
                model=self._config.model,
                messages=messages,
                temperature=self._config.temperature,
                tools=tool_defs,
                tool_choice="auto",
            )
            result: ChatResult = self._provider_client.chat(req)
            if result.usage:
                input_tokens += result.usage.prompt_tokens
                output_tokens += result.usage.completion_tokens
            assistant_msg = result.message

            if not assistant_msg.tool_calls:
                content = assistant_msg.content or ""
                self._manager.append(
                    conversation,
                    "assistant",
                    content,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    meta={"iterations": iteration},
                )
                self._log(
                    logging.INFO,
                    "Stored final answer",
                    log_ctx,
                    iterations=iteration,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )
                self._maybe_auto_label(conversation, log_ctx)
                return LoopOutcome(
                    kind="final",
                    content=content,
                    iterations=iteration,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )

            self._log(
                logging.INFO,
                "Executing tool calls",
                log_ctx,
                iteration=iteration,
                call_count=len(assistant_msg.tool_calls),
            )
            messages.append(
                ChatMessage(role="assistant", content=assistant_msg.content or "", tool_calls=assistant_msg.tool_calls)
            )
            for tool_call in assistant_msg.tool_calls:
                if self._cancelled(cancel_event):
                    return self._interrupted(log_ctx, iteration, input_tokens, output_tokens)
                if verbose:
                    self._notify(verbose, format_tool_call(tool_call), log_ctx)
                tool_result = self._execute_tool(tool_call, log_ctx)
                messages.append(
                    ChatMessage(role="tool", content=tool_result.content, tool_call_id=tool_call.id)
                )
                if verbose:
                    self._notify(verbose, format_tool_result(tool_result.content), log_ctx)

        self._log(logging.WARNING, "Reached max iterations", log_ctx, max_iterations=limit)
        return LoopOutcome(
            kind="max_iterations",
            limit=limit,
            iterations=limit,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def _build_messages(self, conversation: Conversation) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        if self._system_prompt is not None:
            messages.append(ChatMessage(role="system", content=self._system_prompt(conversation)))
        for record in self._manager.history(conversation):
            messages.append(ChatMessage(role=record.role, content=record.content))
        return messages

    def _execute_tool(self, tool_call: ToolCall, log_ctx: Dict[str, Any]) -> ToolResult:
        """执行工具，失败时重试；最终失败转成 "Error: ..." observation。"""
        attempts = max(1, self._config.max_tool_retries)
        last_error = ""
        for attempt in range(1, attempts + 1):
            self._log(
                logging.INFO,
                "Tool call received",
                log_ctx,
                tool_name=tool_call.name,
                tool_call_id=tool_call.id,
                tool_args=tool_call.arguments,
                attempt=attempt,
            )
            try:
                output = self._tools.execute(tool_call.name, tool_call.arguments)
            except (UnknownTool, ToolExecutionError) as e:
                last_error = e.message
                self._log(
                    logging.WARNING,
                    "Tool execution failed",
                    log_ctx,
                    tool_call_id=tool_call.id,
                    attempt=attempt,
                    error=last_error,
                )
                continue
            content = str(output)
            self._log(
                logging.INFO,
                "Tool execution finished",
                log_ctx,
                tool_call_id=tool_call.id,
                success=output.success,
                result_preview=content[:200],
            )
            return ToolResult(call_id=tool_call.id, content=content, success=output.success)
        return ToolResult(call_id=tool_call.id, content=f"Error: {last_error}", success=False)

    def _maybe_auto_label(self, conversation: Conversation, log_ctx: Dict[str, Any]) -> None:
        if self._auto_labeler is None:
            return
        try:
            self._auto_labeler.generate(conversation)
        except Exception:
            # 自动标签失败不影响本轮回答
            logger.exception("Auto label failed", extra={"extra": dict(log_ctx)})

    def _interrupted(
        self, log_ctx: Dict[str, Any], iterations: int, input_tokens: int, output_tokens: int
    ) -> LoopOutcome:
        self._log(logging.INFO, "Loop interrupted", log_ctx, iterations=iterations)
        return LoopOutcome(
            kind="interrupted",
            iterations=iterations,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def _notify(self, callback: VerboseCallback, text: str, log_ctx: Dict[str, Any]) -> None:
        try:
            callback(text)
        except Exception:
            logger.exception("Verbose callback failed", extra={"extra": dict(log_ctx)})

    @staticmethod
    def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _truncate(text: str, limit: int = VERBOSE_TRUNCATE) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_tool_call(tool_call: ToolCall) -> str:
    args = _truncate(json.dumps(tool_call.arguments, indent=2, ensure_ascii=False))
    return f"🔧 **Tool** `{tool_call.name}`\n```json\n{args}\n```"


def format_tool_result(content: str) -> str:
    body = _truncate(content) if content else "(empty)"
    return f"📥 **Result**\n```\n{body}\n```"
