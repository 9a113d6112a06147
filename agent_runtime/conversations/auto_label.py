"""自动为会话生成简短标签。

触发条件：功能开启、会话尚无标签、消息数达到 MIN_MESSAGES_FOR_AUTO_LABEL
（3 轮用户 + 3 轮助手）。任何失败都只记录日志，不影响本轮回答。
"""

import logging
import re
from typing import Optional

from agent_runtime.domain.conversation import Conversation
from agent_runtime.domain.exceptions import BusinessError
from agent_runtime.domain.models import ChatMessage, ChatRequest
from agent_runtime.infrastructure.logging.logger import logger
from agent_runtime.providers.base import ProviderClient
from .manager import LABEL_PATTERN, ConversationManager

MIN_MESSAGES_FOR_AUTO_LABEL = 6

LABEL_PROMPT = """Based on the following conversation, generate a short label (1-2 words) that describes the topic.
Use lowercase letters only. If two words, separate them with a dash (-).
Examples: "coding-help", "travel-planning", "recipe-ideas", "debugging"

Conversation:
{conversation}

Label (respond with just the label, nothing else):"""


def format_label(raw: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9\s\-_]", "", raw or "")
    words = [w for w in cleaned.split() if w][:2]
    return "-".join(words).lower()


class AutoLabeler:
    def __init__(
        self,
        manager: ConversationManager,
        provider: ProviderClient,
        model: str,
        enabled: bool = True,
    ):
        self._manager = manager
        self._provider = provider
        self._model = model
        self._enabled = enabled

    def should_generate(self, conversation: Conversation) -> bool:
        if not self._enabled or conversation.has_label:
            return False
        return self._manager.message_count(conversation) >= MIN_MESSAGES_FOR_AUTO_LABEL

    def generate(self, conversation: Conversation) -> Optional[str]:
        """满足条件时生成并设置标签，返回设置成功的标签。"""
        if not self.should_generate(conversation):
            return None
        label = self.generate_label(conversation)
        if not label:
            return None
        try:
            self._manager.set_label(conversation.id, label)
        except BusinessError as e:
            logger.warning(
                "Auto label rejected",
                extra={"extra": {"conversation_id": conversation.id, "label": label, "error": e.message}},
            )
            return None
        conversation.label = label
        logger.info(
            f"Generated label '{label}' for conversation {conversation.id}",
            extra={"extra": {"conversation_id": conversation.id, "label": label}},
        )
        return label

    def generate_label(self, conversation: Conversation) -> Optional[str]:
        messages = self._manager.history(conversation)[:MIN_MESSAGES_FOR_AUTO_LABEL]
        text = "\n\n".join(f"{m.role}: {m.content}" for m in messages)
        req = ChatRequest(
            provider=self._provider.name,
            model=self._model,
            messages=[ChatMessage(role="user", content=LABEL_PROMPT.format(conversation=text))],
            temperature=0.2,
            tool_choice="none",
        )
        try:
            result = self._provider.chat(req)
        except BusinessError as e:
            logger.log(
                logging.WARNING,
                "Auto label request failed",
                extra={"extra": {"conversation_id": conversation.id, "error": e.message}},
            )
            return None
        label = format_label((result.message.content or "").strip())
        if not label or not LABEL_PATTERN.match(label):
            return None
        return label

