import logging
import re
from typing import Dict, List, Optional, Tuple, Type

from agent_runtime.domain.exceptions import BusinessError, UsageError
from agent_runtime.infrastructure.logging.logger import logger
from .base import Command, CommandContext

COMMAND_PATTERN = re.compile(r"^/([a-zA-Z0-9_]+)(?:\s+(.+))?$", re.DOTALL)


class CommandRegistry:
    """斜杠命令注册表：解析 ``/name [args]`` 并分发到对应处理器。"""

    def __init__(self):
        self._commands: Dict[str, Command] = {}

    def register(self, command_cls: Type[Command]) -> Command:
        existing = self._commands.get(command_cls.name)
        if existing is not None:
            return existing
        command = command_cls()
        self._commands[command_cls.name] = command
        return command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return list(self._commands)

    def all(self) -> List[Command]:
        return list(self._commands.values())

    @staticmethod
    def parse(text: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
        match = COMMAND_PATTERN.match((text or "").strip())
        if not match:
            return None
        args = match.group(2)
        return match.group(1), (args.strip() if args else None)

    def is_command(self, text: Optional[str]) -> bool:
        parsed = self.parse(text)
        return parsed is not None and parsed[0] in self._commands

    def execute(self, text: str, context: CommandContext) -> str:
        """执行命令并返回展示文本；业务错误在这里转成文本，不会抛给通道层。"""
        parsed = self.parse(text)
        if parsed is None or parsed[0] not in self._commands:
            name = parsed[0] if parsed else (text or "").strip().lstrip("/").split(" ")[0]
            return f"Unknown command: /{name}. Type /help for available commands."
        name, args = parsed
        context.registry = self
        log_ctx = {
            "command": name,
            "channel": context.channel,
            "conversation_id": context.conversation.id,
        }
        try:
            result = self._commands[name].execute(context, args)
        except UsageError as e:
            return e.message
        except BusinessError as e:
            logger.log(logging.INFO, "Command rejected", extra={"extra": {**log_ctx, "error": e.message}})
            return f"Error: {e.message}"
        logger.log(logging.INFO, "Command executed", extra={"extra": log_ctx})
        return result
