"""斜杠命令：绕过推理循环，直接修改会话状态。

- base: Command / CommandContext 与时间格式化工具。
- registry: CommandRegistry，负责解析与分发。
- builtin: 内置命令集合与 default_command_registry()。
"""

from agent_runtime.commands.base import Command, CommandContext, format_time_ago
from agent_runtime.commands.builtin import default_command_registry
from agent_runtime.commands.registry import COMMAND_PATTERN, CommandRegistry

__all__ = [
    "COMMAND_PATTERN",
    "Command",
    "CommandContext",
    "CommandRegistry",
    "default_command_registry",
    "format_time_ago",
]
