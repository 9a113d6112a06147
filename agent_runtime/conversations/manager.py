"""会话状态机。

每个 Chat 至多有一个当前会话（is_current=True，且与 chat.current_conversation_id 一致）；
标签在同一 Chat 内唯一；已归档的会话不能是当前会话，切换过去时自动取消归档。
所有跨记录的修改都包在 store.transaction() 中完成。
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from agent_runtime.domain.conversation import Chat, Conversation, ConversationStore, MessageRecord
from agent_runtime.domain.exceptions import (
    BusinessError,
    InvalidFormat,
    InvalidOperation,
    LabelTaken,
    NotFound,
    UsageError,
)
from agent_runtime.domain.models import ChatMessage, ChatRequest, Role
from agent_runtime.infrastructure.logging.logger import logger
from agent_runtime.providers.base import ProviderClient
from . import human_id

LABEL_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MIN_MESSAGES_FOR_COMPACT = 10
DEFAULT_KEEP_RECENT = 5
SUMMARY_PREFIX = "Previous conversation summary: "

SUMMARIZE_PROMPT = (
    "Please summarize the following conversation, preserving key context, decisions, and facts. "
    "Be concise but comprehensive:\n\n{conversation}"
)


@dataclass
class ArchiveResult:
    archived: Conversation
    new_conversation: Optional[Conversation] = None


@dataclass
class CompactResult:
    conversation: Conversation
    summary: str
    summarized_count: int
    kept_count: int


class ConversationManager:
    def __init__(
        self,
        store: ConversationStore,
        provider: Optional[ProviderClient] = None,
        model: Optional[str] = None,
    ):
        self._store = store
        self._provider = provider
        self._model = model

    @property
    def store(self) -> ConversationStore:
        return self._store

    # ---- Chat ----

    def chat_for(self, channel: str, external_id: str, user_identifier: Optional[str] = None) -> Chat:
        return self._store.get_or_create_chat(channel, external_id, user_identifier)

    # ---- 当前会话 ----

    def current_for(self, chat: Chat) -> Conversation:
        """返回当前会话；不存在或已归档时惰性创建新会话。"""
        with self._store.transaction():
            chat = self._refresh_chat(chat)
            if chat.current_conversation_id and self._store.conversation_exists(chat.current_conversation_id):
                conv = self._store.get_conversation(chat.current_conversation_id)
                if not conv.archived:
                    return conv
            return self._designate(chat, self._store.create_conversation(chat.id))

    def create_new(self, chat: Chat) -> Conversation:
        with self._store.transaction():
            chat = self._refresh_chat(chat)
            conv = self._designate(chat, self._store.create_conversation(chat.id))
        self._log(logging.INFO, "Created new conversation", chat, conversation_id=conv.id)
        return conv

    def switch(self, chat: Chat, identifier: Optional[str]) -> Conversation:
        """按标签、再按 ID（不区分大小写）切换当前会话。"""
        ident = (identifier or "").strip()
        if not ident:
            raise UsageError.of("Usage: /switch <label-or-id>")
        with self._store.transaction():
            chat = self._refresh_chat(chat)
            conv = self.find(chat, ident)
            if conv is None:
                raise NotFound.of(f"Conversation '{ident}' not found")
            conv.archived = False
            conv = self._designate(chat, conv)
        self._log(logging.INFO, "Switched conversation", chat, conversation_id=conv.id)
        return conv

    def archive(self, chat: Chat, identifier: Optional[str] = None) -> ArchiveResult:
        """归档会话。

        - 带标识符：归档该非当前会话，若它是当前会话则报 InvalidOperation。
        - 不带标识符：归档当前会话并创建新的当前会话，二者一并返回。
        """
        ident = (identifier or "").strip()
        with self._store.transaction():
            chat = self._refresh_chat(chat)
            if ident:
                conv = self.find(chat, ident)
                if conv is None:
                    raise NotFound.of(f"Conversation '{ident}' not found")
                if conv.is_current or conv.id == chat.current_conversation_id:
                    raise InvalidOperation.of(
                        "Cannot archive the current conversation. "
                        "Use /archive without arguments to archive current and start new."
                    )
                conv.archived = True
                self._store.save_conversation(conv)
                result = ArchiveResult(archived=conv)
            else:
                if not chat.current_conversation_id or not self._store.conversation_exists(chat.current_conversation_id):
                    raise InvalidOperation.of("No current conversation to archive")
                current = self._store.get_conversation(chat.current_conversation_id)
                current.archived = True
                current.is_current = False
                self._store.save_conversation(current)
                new_conv = self._designate(chat, self._store.create_conversation(chat.id))
                result = ArchiveResult(archived=current, new_conversation=new_conv)
        self._log(
            logging.INFO,
            "Archived conversation",
            chat,
            conversation_id=result.archived.id,
            new_conversation_id=result.new_conversation.id if result.new_conversation else None,
        )
        return result

    def delete(self, chat: Chat, identifier: Optional[str]) -> Conversation:
        ident = (identifier or "").strip()
        if not ident:
            raise UsageError.of("Usage: /delete <current|label-or-id>")
        with self._store.transaction():
            chat = self._refresh_chat(chat)
            conv = self.find(chat, ident)
            if conv is None:
                raise NotFound.of(f"Conversation '{ident}' not found")
            if conv.id == chat.current_conversation_id:
                raise InvalidOperation.of(
                    "Cannot delete the current conversation. Use /delete current to delete it and start a new one."
                )
            self._store.delete_conversation(conv.id)
        self._log(logging.INFO, "Deleted conversation", chat, conversation_id=conv.id)
        return conv

    def delete_current(self, chat: Chat) -> ArchiveResult:
        """删除当前会话并创建新的当前会话。"""
        with self._store.transaction():
            current = self.current_for(chat)
            chat = self._refresh_chat(chat)
            new_conv = self._designate(chat, self._store.create_conversation(chat.id))
            self._store.delete_conversation(current.id)
        return ArchiveResult(archived=current, new_conversation=new_conv)

    # ---- 标签 ----

    def set_label(self, conversation_id: str, label: Optional[str]) -> Conversation:
        """设置或清除标签；同 Chat 内唯一，重复设置同一标签为空操作。"""
        value = (label or "").strip()
        with self._store.transaction():
            conv = self.get(conversation_id)
            if not value:
                conv.label = None
                self._store.save_conversation(conv)
                return conv
            if not LABEL_PATTERN.match(value):
                raise InvalidFormat.of("Invalid label format. Use only letters, numbers, dashes, and underscores.")
            if conv.label == value:
                return conv
            owner = self._store.find_by_label(conv.chat_id, value)
            if owner is not None and owner.id != conv.id:
                raise LabelTaken.of(f"Label '{value}' already in use by another conversation")
            conv.label = value
            self._store.save_conversation(conv)
        return conv

    def label_in_use(self, chat: Chat, label: str, exclude_id: Optional[str] = None) -> bool:
        owner = self._store.find_by_label(chat.id, label)
        return owner is not None and owner.id != exclude_id

    def find_by_label(self, chat: Chat, label: str) -> Optional[Conversation]:
        return self._store.find_by_label(chat.id, label)

    # ---- 查询 ----

    def get(self, conversation_id: str) -> Conversation:
        if not self._store.conversation_exists(conversation_id):
            raise NotFound.of(f"Conversation '{conversation_id}' not found")
        return self._store.get_conversation(conversation_id)

    def find(self, chat: Chat, identifier: str) -> Optional[Conversation]:
        """先按标签，再按 ID 解析；只在本 Chat 的会话中查找。"""
        conv = self._store.find_by_label(chat.id, identifier.strip())
        if conv is not None:
            return conv
        cid = human_id.normalize(identifier)
        if cid and self._store.conversation_exists(cid):
            conv = self._store.get_conversation(cid)
            if conv.chat_id == chat.id:
                return conv
        return None

    def list(self, chat: Chat, archived: Optional[bool] = False) -> List[Conversation]:
        """列出会话，按最近活动时间倒序。

        archived=False 只含未归档，True 只含已归档，None 全部。
        """
        items = self._store.list_conversations(chat.id)
        if archived is not None:
            items = [c for c in items if c.archived == archived]
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def history(self, conversation: Conversation) -> List[MessageRecord]:
        return self._store.list_messages(conversation.id)

    def message_count(self, conversation: Conversation) -> int:
        return len(self._store.list_messages(conversation.id))

    def last_activity(self, conversation: Conversation) -> Optional[datetime]:
        msgs = self._store.list_messages(conversation.id)
        return msgs[-1].created_at if msgs else None

    # ---- 修改 ----

    def append(
        self,
        conversation: Conversation,
        role: Role,
        content: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        """追加消息，并把 store 中更新后的计数同步回传入的会话对象。"""
        record = MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=conversation.id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            meta=dict(meta or {}),
        )
        updated = self._store.add_message(record)
        conversation.input_tokens = updated.input_tokens
        conversation.output_tokens = updated.output_tokens
        conversation.updated_at = updated.updated_at
        return record

    def reset(self, conversation: Conversation) -> Conversation:
        with self._store.transaction():
            conv = self.get(conversation.id)
            self._store.replace_messages(conv.id, [])
            conv.input_tokens = 0
            conv.output_tokens = 0
            self._store.save_conversation(conv)
        conversation.input_tokens = 0
        conversation.output_tokens = 0
        return conv

    def set_verbose(self, conversation: Conversation, enabled: bool) -> Conversation:
        with self._store.transaction():
            conv = self.get(conversation.id)
            conv.verbose = enabled
            self._store.save_conversation(conv)
        conversation.verbose = enabled
        return conv

    def compact(
        self,
        conversation: Conversation,
        keep_recent_n: int = DEFAULT_KEEP_RECENT,
        provider: Optional[ProviderClient] = None,
    ) -> CompactResult:
        """用一条摘要消息替换较早的消息，保留最近 keep_recent_n 条原文。"""
        messages = self._store.list_messages(conversation.id)
        if len(messages) < MIN_MESSAGES_FOR_COMPACT:
            raise InvalidOperation.of(
                f"Need at least {MIN_MESSAGES_FOR_COMPACT} messages to compact. Current: {len(messages)}"
            )
        keep = max(0, keep_recent_n)
        older = messages[:-keep] if keep else list(messages)
        recent = messages[-keep:] if keep else []

        summary = self._summarize(older, provider or self._provider)
        summary_record = MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=conversation.id,
            role="system",
            content=f"{SUMMARY_PREFIX}{summary}",
            created_at=older[0].created_at if older else datetime.now(timezone.utc),
            meta={"compacted": len(older)},
        )
        with self._store.transaction():
            # 摘要期间追加的消息保留在末尾
            snapshot_ids = {m.id for m in messages}
            late = [m for m in self._store.list_messages(conversation.id) if m.id not in snapshot_ids]
            self._store.replace_messages(conversation.id, [summary_record, *recent, *late])
        self._log(
            logging.INFO,
            "Compacted conversation",
            None,
            conversation_id=conversation.id,
            summarized=len(older),
            kept=len(recent),
        )
        return CompactResult(
            conversation=conversation,
            summary=summary,
            summarized_count=len(older),
            kept_count=len(recent),
        )

    # ---- 内部方法 ----

    def _summarize(self, messages: List[MessageRecord], provider: Optional[ProviderClient]) -> str:
        if provider is None:
            raise InvalidOperation.of("No model provider configured for summarization")
        text = "\n\n".join(f"{m.role}: {m.content}" for m in messages)
        req = ChatRequest(
            provider=provider.name,
            model=self._model or "",
            messages=[ChatMessage(role="user", content=SUMMARIZE_PROMPT.format(conversation=text))],
            temperature=0.2,
            tool_choice="none",
        )
        result = provider.chat(req)
        summary = (result.message.content or "").strip()
        if not summary:
            raise BusinessError(code="SUMMARY_EMPTY", message="Model returned an empty summary")
        return summary

    def _refresh_chat(self, chat: Chat) -> Chat:
        """从 store 重新读取 chat，避免调用方持有过期的 current_conversation_id。"""
        fresh = self._store.get_chat(chat.id)
        chat.current_conversation_id = fresh.current_conversation_id
        chat.user_identifier = fresh.user_identifier
        return chat

    def _designate(self, chat: Chat, conv: Conversation) -> Conversation:
        """将 conv 设为 chat 的唯一当前会话。"""
        for other in self._store.list_conversations(chat.id):
            if other.is_current and other.id != conv.id:
                other.is_current = False
                self._store.save_conversation(other)
        conv.is_current = True
        conv.archived = False
        self._store.save_conversation(conv)
        chat.current_conversation_id = conv.id
        self._store.save_chat(chat)
        return conv

    @staticmethod
    def _log(level: int, message: str, chat: Optional[Chat], **fields: Any) -> None:
        payload: Dict[str, Any] = {}
        if chat is not None:
            payload.update({"chat_id": chat.id, "channel": chat.channel})
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
