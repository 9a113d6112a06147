import pytest

from agent_runtime.conversations.manager import ConversationManager
from agent_runtime.infrastructure.storage.json_store import JsonConversationStore
from fakes import FakeProvider


@pytest.fixture
def store(tmp_path):
    return JsonConversationStore(root=tmp_path / ".storage")


@pytest.fixture
def provider():
    return FakeProvider(default="summary text")


@pytest.fixture
def manager(store, provider):
    return ConversationManager(store, provider=provider, model="test-model")


@pytest.fixture
def chat(manager):
    return manager.chat_for("test", "chat-1", "alice")
