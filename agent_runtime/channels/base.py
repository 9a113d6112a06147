"""通道基类：外部消息传输适配器的模板方法。

process_message 的流程固定为：
提取内容 → 授权检查 → 查找 chat → 命令直接回复 / 普通消息启动 Run。
子类只需实现 start/stop 以及消息投递，其余钩子按需覆盖。
"""

import logging
import threading
from typing import Any, ClassVar, Dict, Optional, Sequence

from agent_runtime.agents.agent import Agent
from agent_runtime.agents.run import Run
from agent_runtime.config.settings import settings as default_settings
from agent_runtime.domain.conversation import Chat
from agent_runtime.domain.exceptions import ConfigurationError
from agent_runtime.infrastructure.logging.logger import logger


class Channel:
    name: ClassVar[str] = ""
    required_config: ClassVar[Sequence[str]] = ()

    def __init__(self, agent: Agent, cfg=default_settings):
        missing = [key for key in self.required_config if not getattr(cfg, key, None)]
        if missing:
            raise ConfigurationError.of(
                f"Missing required configuration: {', '.join(missing)}", channel=self.name
            )
        self._agent = agent
        self._settings = cfg
        self._running = threading.Event()
        self._stop_requested = threading.Event()

    # ---- 生命周期 ----

    def start(self) -> None:
        """阻塞运行直到 stop() 被调用。"""
        raise NotImplementedError

    def stop(self) -> None:
        self._stop_requested.set()
        self._running.clear()

    def is_running(self) -> bool:
        return self._running.is_set()

    # ---- 消息处理 ----

    def process_message(
        self, source_id: str, raw_message: Any, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Run]:
        """处理一条入站消息；普通消息返回启动的 Run，命令与被拒绝的消息返回 None。"""
        user_id: Optional[str] = None
        try:
            content = self.extract_content(raw_message)
            if not content or not content.strip():
                return None
            user_id = self.extract_user_id(source_id, raw_message)
            if not self.is_authorized(user_id):
                self.handle_unauthorized(source_id, user_id, raw_message)
                return None

            self.before_process(source_id, user_id, content, raw_message)
            chat = self.chat_for(source_id, user_id)
            if self._agent.is_command(content):
                reply, _ = self._agent.handle_command(chat, content.strip(), user_id)
                self.send_response(source_id, reply)
                self.after_process(source_id, user_id, reply, raw_message)
                return None

            self.start_typing(source_id)
            run = self._agent.chat(
                chat,
                content,
                callback=lambda text: self._reply(source_id, user_id, text, raw_message),
                error_callback=lambda message: self.send_response(source_id, f"Error: {message}"),
                completion_callback=lambda: self.stop_typing(source_id),
                verbose_callback=lambda text: self.send_response(source_id, text),
            )
            return run
        except Exception as e:
            self.handle_error(source_id, user_id, e, raw_message)
            return None

    def send_response(self, source_id: str, text: str) -> None:
        self.deliver_message(source_id, self.format_message(text))

    def chat_for(self, source_id: str, user_id: Optional[str]) -> Chat:
        return self._agent.manager.chat_for(self.name, str(source_id), user_id)

    def _reply(self, source_id: str, user_id: Optional[str], text: str, raw_message: Any) -> None:
        self.send_response(source_id, text)
        self.after_process(source_id, user_id, text, raw_message)

    # ---- 钩子 ----

    def extract_content(self, raw_message: Any) -> Optional[str]:
        return raw_message if isinstance(raw_message, str) else None

    def extract_user_id(self, source_id: str, raw_message: Any) -> Optional[str]:
        return str(source_id)

    def is_authorized(self, user_id: Optional[str]) -> bool:
        return False

    def handle_unauthorized(self, source_id: str, user_id: Optional[str], raw_message: Any) -> None:
        self._log(logging.WARNING, "Unauthorized message ignored", source_id=source_id, user_id=user_id)

    def before_process(self, source_id: str, user_id: Optional[str], content: str, raw_message: Any) -> None:
        self._log(logging.INFO, "Message received", source_id=source_id, user_id=user_id)

    def after_process(self, source_id: str, user_id: Optional[str], response: str, raw_message: Any) -> None:
        pass

    def start_typing(self, source_id: str) -> None:
        pass

    def stop_typing(self, source_id: str) -> None:
        pass

    def handle_error(
        self, source_id: str, user_id: Optional[str], error: Exception, raw_message: Any
    ) -> None:
        logger.exception(
            "Error processing message",
            extra={"extra": {"channel": self.name, "source_id": source_id, "user_id": user_id}},
        )
        try:
            self.send_response(source_id, f"Error: {error}")
        except Exception:
            logger.exception("Failed to deliver error message", extra={"extra": {"channel": self.name}})

    def format_message(self, text: str) -> str:
        return text

    def deliver_message(self, source_id: str, formatted: str) -> None:
        raise NotImplementedError

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"channel": self.name}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
