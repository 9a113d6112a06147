import json
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from agent_runtime.config.settings import settings
from agent_runtime.conversations import human_id
from agent_runtime.domain.conversation import Chat, ConversationStore, Conversation, MessageRecord
from agent_runtime.domain.exceptions import BusinessError


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """基于文件系统的会话存储。

    目录结构::

        <root>/chats.json
        <root>/conversations/<id>/meta.json
        <root>/conversations/<id>/messages.jsonl

    所有读改写都在同一把可重入锁内完成；manager 通过 transaction()
    把多条记录的更新合并为一次原子操作（单进程单写者部署）。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._chats_path = self._root / "chats.json"
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["JsonConversationStore"]:
        with self._lock:
            yield self

    # ---- Chat ----

    def get_or_create_chat(
        self, channel: str, external_id: str, user_identifier: Optional[str] = None
    ) -> Chat:
        with self._lock:
            chats = self._read_chats()
            for data in chats.values():
                if data["channel"] == channel and data["external_id"] == str(external_id):
                    chat = self._to_chat(data)
                    if user_identifier and chat.user_identifier != user_identifier:
                        chat.user_identifier = user_identifier
                        self.save_chat(chat)
                    return chat
            now = datetime.now(timezone.utc)
            chat = Chat(
                id=f"ch-{uuid4().hex[:12]}",
                channel=channel,
                external_id=str(external_id),
                user_identifier=user_identifier,
                current_conversation_id=None,
                created_at=now,
                updated_at=now,
            )
            chats[chat.id] = self._chat_to_dict(chat)
            self._write_json(self._chats_path, chats)
            return chat

    def get_chat(self, chat_id: str) -> Chat:
        with self._lock:
            data = self._read_chats().get(chat_id)
        if data is None:
            raise BusinessError(code="CHAT_NOT_FOUND", message=chat_id)
        return self._to_chat(data)

    def save_chat(self, chat: Chat) -> None:
        with self._lock:
            chats = self._read_chats()
            chat.updated_at = datetime.now(timezone.utc)
            chats[chat.id] = self._chat_to_dict(chat)
            self._write_json(self._chats_path, chats)

    # ---- Conversation ----

    def create_conversation(self, chat_id: str, meta: Optional[Dict[str, Any]] = None) -> Conversation:
        with self._lock:
            cid = human_id.generate(self.conversation_exists)
            cdir = self._conv_root / cid
            cdir.mkdir(parents=True, exist_ok=True)
            now = datetime.now(timezone.utc)
            conv = Conversation(id=cid, chat_id=chat_id, created_at=now, updated_at=now, meta=dict(meta or {}))
            self._write_meta(cdir, conv)
            return conv

    def conversation_exists(self, conversation_id: str) -> bool:
        return (self._conv_root / human_id.normalize(conversation_id) / "meta.json").exists()

    def get_conversation(self, conversation_id: str) -> Conversation:
        cid = human_id.normalize(conversation_id)
        meta_path = self._conv_root / cid / "meta.json"
        if not meta_path.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        try:
            with self._lock:
                data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return self._to_conversation(data)

    def save_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            cdir = self._conv_root / conversation.id
            if not cdir.exists():
                raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation.id)
            self._write_meta(cdir, conversation)

    def list_conversations(self, chat_id: Optional[str] = None) -> List[Conversation]:
        items: List[Conversation] = []
        with self._lock:
            for cdir in sorted(self._conv_root.glob("*/")):
                meta_path = cdir / "meta.json"
                if not meta_path.exists():
                    continue
                try:
                    data = json.loads(meta_path.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError):
                    continue
                if chat_id is not None and data.get("chat_id") != chat_id:
                    continue
                items.append(self._to_conversation(data))
        return items

    def find_by_label(self, chat_id: str, label: str) -> Optional[Conversation]:
        for conv in self.list_conversations(chat_id):
            if conv.label and conv.label == label:
                return conv
        return None

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / human_id.normalize(conversation_id)
        with self._lock:
            if not cdir.exists():
                raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            try:
                shutil.rmtree(cdir)
            except OSError as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    # ---- Message ----

    def add_message(self, message: MessageRecord) -> Conversation:
        """追加一条消息，并同步会话的 updated_at 与 token 计数。"""
        cdir = self._conv_root / message.conversation_id
        msgs_path = cdir / "messages.jsonl"
        with self._lock:
            conv = self.get_conversation(message.conversation_id)
            try:
                line = json.dumps(self._message_to_dict(message), ensure_ascii=False)
                with msgs_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
            conv.input_tokens += message.input_tokens
            conv.output_tokens += message.output_tokens
            conv.updated_at = datetime.now(timezone.utc)
            self._write_meta(cdir, conv)
            return conv

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        msgs_path = self._conv_root / human_id.normalize(conversation_id) / "messages.jsonl"
        items: List[MessageRecord] = []
        with self._lock:
            if not msgs_path.exists():
                return items
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            try:
                items.append(self._to_message(json.loads(line)))
            except (json.JSONDecodeError, KeyError):
                continue
        # 文件顺序即插入顺序
        return items

    def replace_messages(self, conversation_id: str, messages: List[MessageRecord]) -> None:
        """整体替换消息序列（用于 reset / compact）。"""
        cdir = self._conv_root / human_id.normalize(conversation_id)
        msgs_path = cdir / "messages.jsonl"
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        body = "".join(json.dumps(self._message_to_dict(m), ensure_ascii=False) + "\n" for m in messages)
        with self._lock:
            if not cdir.exists():
                raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            try:
                tmp_path.write_text(body, encoding="utf-8")
                os.replace(tmp_path, msgs_path)
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    # ---- 序列化 ----

    def _read_chats(self) -> Dict[str, Dict[str, Any]]:
        if not self._chats_path.exists():
            return {}
        try:
            return json.loads(self._chats_path.read_text(encoding="utf-8")) or {}
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        obj = {
            "id": conv.id,
            "chat_id": conv.chat_id,
            "label": conv.label,
            "archived": conv.archived,
            "is_current": conv.is_current,
            "verbose": conv.verbose,
            "input_tokens": conv.input_tokens,
            "output_tokens": conv.output_tokens,
            "created_at": _ts(conv.created_at),
            "updated_at": _ts(conv.updated_at),
            "meta": conv.meta,
        }
        self._write_json(cdir / "meta.json", obj)

    def _write_json(self, path: Path, obj: Any) -> None:
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _chat_to_dict(chat: Chat) -> Dict[str, Any]:
        data = asdict(chat)
        data["created_at"] = _ts(chat.created_at)
        data["updated_at"] = _ts(chat.updated_at)
        return data

    @staticmethod
    def _to_chat(data: Dict[str, Any]) -> Chat:
        return Chat(
            id=data["id"],
            channel=data["channel"],
            external_id=data["external_id"],
            user_identifier=data.get("user_identifier"),
            current_conversation_id=data.get("current_conversation_id"),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            chat_id=data["chat_id"],
            label=data.get("label"),
            archived=bool(data.get("archived", False)),
            is_current=bool(data.get("is_current", False)),
            verbose=bool(data.get("verbose", False)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
            meta=data.get("meta") or {},
        )

    @staticmethod
    def _message_to_dict(message: MessageRecord) -> Dict[str, Any]:
        payload = asdict(message)
        payload["created_at"] = _ts(message.created_at)
        return payload

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_ts(data["created_at"]),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            meta=data.get("meta") or {},
        )
