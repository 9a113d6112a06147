from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Protocol
from datetime import datetime
from .models import Role


@dataclass
class Chat:
    """一个外部会话端点，身份为 (channel, external_id)。"""

    id: str
    channel: str
    external_id: str
    user_identifier: Optional[str]
    current_conversation_id: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass
class Conversation:
    id: str
    chat_id: str
    created_at: datetime
    updated_at: datetime
    label: Optional[str] = None
    archived: bool = False
    is_current: bool = False
    verbose: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_label(self) -> bool:
        return bool(self.label)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)


class ConversationStore(Protocol):
    def transaction(self) -> AbstractContextManager:
        ...

    def get_or_create_chat(
        self, channel: str, external_id: str, user_identifier: Optional[str] = None
    ) -> Chat:
        ...

    def get_chat(self, chat_id: str) -> Chat:
        ...

    def save_chat(self, chat: Chat) -> None:
        ...

    def create_conversation(self, chat_id: str, meta: Optional[Dict[str, Any]] = None) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def conversation_exists(self, conversation_id: str) -> bool:
        ...

    def save_conversation(self, conversation: Conversation) -> None:
        ...

    def list_conversations(self, chat_id: Optional[str] = None) -> List[Conversation]:
        ...

    def find_by_label(self, chat_id: str, label: str) -> Optional[Conversation]:
        ...

    def add_message(self, message: MessageRecord) -> Conversation:
        ...

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        ...

    def replace_messages(self, conversation_id: str, messages: List[MessageRecord]) -> None:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...
