"""Agent 门面：把会话管理、推理循环、命令与工具组装在一起。

通道层只依赖这里：命令走 CommandRegistry，普通消息启动一个 Run。
同一会话上的多轮对话串行执行（每个会话一把锁，由 Run 线程持有）。
"""

import threading
import weakref
from typing import Dict, Optional, Tuple

from agent_runtime.commands import CommandContext, CommandRegistry, default_command_registry
from agent_runtime.config.settings import settings as default_settings
from agent_runtime.conversations.auto_label import AutoLabeler
from agent_runtime.conversations.manager import ConversationManager
from agent_runtime.domain.conversation import Chat, Conversation, ConversationStore
from agent_runtime.domain.exceptions import BusinessError
from agent_runtime.infrastructure.storage.json_store import JsonConversationStore
from agent_runtime.prompts import render_system_prompt
from agent_runtime.providers import create_provider
from agent_runtime.providers.base import ProviderClient
from agent_runtime.tools.registry import ToolRegistry, default_tool_registry
from .loop_engine import LoopConfig, LoopEngine, VerboseCallback
from .run import CompletionCallback, Run, RunTracker, TextCallback


class Agent:
    def __init__(
        self,
        manager: ConversationManager,
        provider_client: ProviderClient,
        tools: ToolRegistry,
        commands: CommandRegistry,
        cfg=default_settings,
    ):
        self._manager = manager
        self._provider_client = provider_client
        self._tools = tools
        self._commands = commands
        self._settings = cfg
        self._active_runs = RunTracker()
        # 只要还有 Run 持有该锁，条目就保留
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

        auto_labeler = None
        if getattr(cfg, "auto_label_enabled", False):
            auto_labeler = AutoLabeler(
                manager,
                provider_client,
                model=getattr(cfg, "auto_label_model", None) or cfg.default_model,
            )
        self._engine = LoopEngine(
            manager=manager,
            provider_client=provider_client,
            tools=tools,
            config=LoopConfig(
                model=cfg.default_model,
                max_iterations=cfg.max_iterations,
                max_tool_retries=cfg.max_tool_retries,
                temperature=cfg.temperature,
            ),
            system_prompt=self.system_prompt,
            auto_labeler=auto_labeler,
        )

    @property
    def manager(self) -> ConversationManager:
        return self._manager

    @property
    def commands(self) -> CommandRegistry:
        return self._commands

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def active_runs(self) -> RunTracker:
        return self._active_runs

    @property
    def engine(self) -> LoopEngine:
        return self._engine

    def system_prompt(self, conversation: Conversation) -> str:
        return render_system_prompt(
            conversation_id=conversation.id,
            label=conversation.label,
            tools=self._tools.names(),
        )

    # ---- 对话 ----

    def chat(
        self,
        chat: Chat,
        message: str,
        callback: Optional[TextCallback] = None,
        error_callback: Optional[TextCallback] = None,
        completion_callback: Optional[CompletionCallback] = None,
        verbose_callback: Optional[VerboseCallback] = None,
    ) -> Run:
        """为 chat 的当前会话启动一轮对话，立即返回 Run。"""
        conversation = self._manager.current_for(chat)
        run = Run(
            engine=self._engine,
            conversation=conversation,
            user_input=message,
            callback=callback,
            error_callback=error_callback,
            completion_callback=completion_callback,
            verbose_callback=verbose_callback,
            tracker=self._active_runs,
            conversation_lock=self._lock_for(conversation.id),
        )
        return run.start()

    def send(self, chat: Chat, message: str, timeout: Optional[float] = None) -> str:
        """同步的一次性对话：等待 Run 结束并返回回答或错误文本。"""
        result: Dict[str, str] = {}
        run = self.chat(
            chat,
            message,
            callback=lambda text: result.setdefault("text", text),
            error_callback=lambda text: result.setdefault("error", f"Error: {text}"),
        )
        if not run.wait(timeout):
            run.interrupt()
            return "Error: request timed out"
        return result.get("text") or result.get("error") or ""

    # ---- 命令 ----

    def is_command(self, text: str) -> bool:
        return self._commands.is_command(text)

    def handle_command(
        self, chat: Chat, text: str, user_id: Optional[str] = None
    ) -> Tuple[str, Conversation]:
        """执行命令，返回展示文本与命令执行后的当前会话。"""
        context = CommandContext(
            conversation=self._manager.current_for(chat),
            chat=chat,
            channel=chat.channel,
            user_id=user_id,
            manager=self._manager,
            provider=self._provider_client,
            settings=self._settings,
            system_prompt=self.system_prompt,
        )
        try:
            reply = self._commands.execute(text, context)
        except BusinessError as e:
            reply = f"Error: {e.message}"
        return reply, context.conversation

    # ---- 中断 ----

    def interrupt(self, chat: Chat) -> int:
        """中断该 chat 当前会话上的所有 Run，返回被中断的数量。"""
        if not chat.current_conversation_id:
            return 0
        runs = self._active_runs.for_conversation(chat.current_conversation_id)
        return sum(1 for run in runs if run.interrupt())

    def shutdown(self) -> int:
        return self._active_runs.interrupt_all()

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock


def build_agent(
    cfg=default_settings,
    store: Optional[ConversationStore] = None,
    provider_client: Optional[ProviderClient] = None,
) -> Agent:
    """按配置组装默认 Agent：JSON 存储、OpenRouter、内置工具与命令。"""
    store = store or JsonConversationStore(root=cfg.storage_root)
    provider_client = provider_client or create_provider(cfg.default_provider, cfg)
    manager = ConversationManager(store, provider=provider_client, model=cfg.default_model)
    return Agent(
        manager=manager,
        provider_client=provider_client,
        tools=default_tool_registry(cfg),
        commands=default_command_registry(),
        cfg=cfg,
    )


_agent: Optional[Agent] = None


def get_default_agent() -> Agent:
    """获取默认的 Agent 实例（单例）。"""
    global _agent
    if _agent is None:
        _agent = build_agent()
    return _agent
