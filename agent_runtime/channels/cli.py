"""交互式终端通道（REPL）。不参与 Supervisor 的后台调度。"""

from typing import Any, Callable, Optional

from agent_runtime.agents.agent import Agent
from agent_runtime.config.settings import settings as default_settings
from .base import Channel

EXIT_COMMANDS = ("exit", "quit", "\\q")
SOURCE_ID = "cli"


class CliChannel(Channel):
    name = "cli"

    def __init__(
        self,
        agent: Agent,
        cfg=default_settings,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
        prompt: str = "You: ",
    ):
        super().__init__(agent, cfg)
        self._input = input_fn
        self._output = output_fn
        self._prompt = prompt

    def start(self) -> None:
        self._running.set()
        self._output("Type your message, /help for commands, or 'exit' to quit.")
        try:
            while self._running.is_set():
                try:
                    line = self._input(self._prompt)
                except EOFError:
                    break
                except KeyboardInterrupt:
                    self._output("")
                    break
                text = (line or "").strip()
                if not text:
                    continue
                if text.lower() in EXIT_COMMANDS:
                    break
                run = self.process_message(SOURCE_ID, text)
                if run is not None:
                    # 终端是同步交互：等待本轮结束再读下一行
                    try:
                        run.wait()
                    except KeyboardInterrupt:
                        run.interrupt()
                        self._output("Interrupted.")
        finally:
            self._running.clear()
        self._output("Goodbye!")

    def extract_user_id(self, source_id: str, raw_message: Any) -> Optional[str]:
        return SOURCE_ID

    def is_authorized(self, user_id: Optional[str]) -> bool:
        return True

    def before_process(self, source_id: str, user_id: Optional[str], content: str, raw_message: Any) -> None:
        pass

    def deliver_message(self, source_id: str, formatted: str) -> None:
        self._output(f"\nAgent: {formatted}\n")
