import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from agent_runtime.domain.conversation import MessageRecord
from agent_runtime.domain.exceptions import BusinessError
from agent_runtime.infrastructure.storage.json_store import JsonConversationStore

ID_PATTERN = re.compile(r"^[a-z]+-[a-z]+-\d{3,4}$")


def _message(conv_id: str, mid: str, role: str = "user", content: str = "x", **tokens) -> MessageRecord:
    return MessageRecord(
        id=mid,
        conversation_id=conv_id,
        role=role,
        content=content,
        created_at=datetime.now(timezone.utc),
        **tokens,
    )


def test_json_store_chat_identity_is_channel_and_external_id():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        a = store.get_or_create_chat("telegram", "42", "alice")
        b = store.get_or_create_chat("telegram", "42")
        c = store.get_or_create_chat("cli", "42")
        assert a.id == b.id
        assert a.id != c.id
        assert store.get_chat(a.id).user_identifier == "alice"


def test_json_store_updates_user_identifier():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        chat = store.get_or_create_chat("telegram", "42", "alice")
        store.get_or_create_chat("telegram", "42", "alice_new")
        assert store.get_chat(chat.id).user_identifier == "alice_new"


def test_json_store_missing_chat_raises():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        with pytest.raises(BusinessError) as exc:
            store.get_chat("ch-missing")
        assert exc.value.code == "CHAT_NOT_FOUND"


def test_json_store_create_conversation_uses_human_id():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        chat = store.get_or_create_chat("cli", "cli")
        conv = store.create_conversation(chat.id, {"source": "test"})
        assert ID_PATTERN.match(conv.id)
        assert store.conversation_exists(conv.id)
        assert store.conversation_exists(conv.id.upper())
        loaded = store.get_conversation(conv.id.upper())
        assert loaded.id == conv.id
        assert loaded.meta == {"source": "test"}


def test_json_store_messages_accumulate_tokens():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        chat = store.get_or_create_chat("cli", "cli")
        conv = store.create_conversation(chat.id)
        store.add_message(_message(conv.id, "m1", content="hi"))
        updated = store.add_message(
            _message(conv.id, "m2", role="assistant", content="hello", input_tokens=10, output_tokens=4)
        )
        assert updated.input_tokens == 10
        assert updated.output_tokens == 4
        assert updated.updated_at >= conv.updated_at
        msgs = store.list_messages(conv.id)
        assert [m.id for m in msgs] == ["m1", "m2"]
        assert msgs[1].role == "assistant"


def test_json_store_replace_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        chat = store.get_or_create_chat("cli", "cli")
        conv = store.create_conversation(chat.id)
        for i in range(3):
            store.add_message(_message(conv.id, f"m{i}"))
        store.replace_messages(conv.id, [_message(conv.id, "summary", role="system")])
        assert [m.id for m in store.list_messages(conv.id)] == ["summary"]
        store.replace_messages(conv.id, [])
        assert store.list_messages(conv.id) == []


def test_json_store_find_by_label_is_scoped_to_chat():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        chat_a = store.get_or_create_chat("cli", "a")
        chat_b = store.get_or_create_chat("cli", "b")
        conv = store.create_conversation(chat_a.id)
        conv.label = "work"
        store.save_conversation(conv)
        assert store.find_by_label(chat_a.id, "work").id == conv.id
        assert store.find_by_label(chat_b.id, "work") is None
        assert [c.id for c in store.list_conversations(chat_b.id)] == []


def test_json_store_delete_conversation():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        chat = store.get_or_create_chat("cli", "cli")
        conv = store.create_conversation(chat.id)
        conv_dir = root / "conversations" / conv.id
        assert conv_dir.exists()
        store.delete_conversation(conv.id)
        assert not conv_dir.exists()
        assert conv.id not in {c.id for c in store.list_conversations()}
        with pytest.raises(BusinessError) as exc:
            store.delete_conversation(conv.id)
        assert exc.value.code == "CONVERSATION_NOT_FOUND"


def test_json_store_persists_across_instances():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        chat = store.get_or_create_chat("telegram", "7")
        conv = store.create_conversation(chat.id)
        conv.label = "notes"
        conv.verbose = True
        store.save_conversation(conv)
        store.add_message(_message(conv.id, "m1", content="persisted"))
        chat.current_conversation_id = conv.id
        store.save_chat(chat)

        reopened = JsonConversationStore(root=root)
        assert reopened.get_or_create_chat("telegram", "7").current_conversation_id == conv.id
        loaded = reopened.get_conversation(conv.id)
        assert loaded.label == "notes"
        assert loaded.verbose is True
        assert reopened.list_messages(conv.id)[0].content == "persisted"
