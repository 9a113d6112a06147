"""斜杠命令的基础类型。"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, ClassVar, List, Optional

from agent_runtime.conversations.manager import ConversationManager
from agent_runtime.domain.conversation import Chat, Conversation
from agent_runtime.providers.base import ProviderClient

if TYPE_CHECKING:
    from .registry import CommandRegistry


@dataclass
class CommandContext:
    """命令执行上下文。

    命令可以替换 conversation（例如 /switch、/new），
    调用方在执行后需要读取最新的 context.conversation。
    """

    conversation: Conversation
    chat: Chat
    channel: str
    user_id: Optional[str]
    manager: ConversationManager
    provider: Optional[ProviderClient] = None
    settings: Any = None
    system_prompt: Optional[Callable[[Conversation], str]] = None
    registry: Optional["CommandRegistry"] = None


class Command:
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        raise NotImplementedError


def format_time_ago(timestamp: Optional[datetime], now: Optional[datetime] = None) -> str:
    if timestamp is None:
        return "no activity"
    now = now or datetime.now(timezone.utc)
    diff = (now - timestamp).total_seconds()
    if diff < 60:
        return "just now"
    if diff < 3600:
        return f"{int(diff // 60)} minutes ago"
    if diff < 86_400:
        return f"{int(diff // 3600)} hours ago"
    if diff < 604_800:
        return f"{int(diff // 86_400)} days ago"
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def describe_conversation(
    manager: ConversationManager, conversation: Conversation, id_label: str = "ID"
) -> List[str]:
    """会话摘要行：ID、标签、消息数、最近活动。"""
    return [
        f"- {id_label}: {conversation.id}",
        f"- Label: {conversation.label or '(no label)'}",
        f"- Messages: {manager.message_count(conversation)}",
        f"- Last activity: {format_time_ago(manager.last_activity(conversation))}",
    ]
