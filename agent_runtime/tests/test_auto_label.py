from agent_runtime.conversations.auto_label import MIN_MESSAGES_FOR_AUTO_LABEL, AutoLabeler, format_label
from agent_runtime.domain.exceptions import ApiError
from fakes import FakeProvider, text_result


def _fill(manager, conv, count):
    for i in range(count):
        manager.append(conv, "user" if i % 2 == 0 else "assistant", f"turn {i}")


def test_format_label():
    assert format_label("Coding Help!") == "coding-help"
    assert format_label("  Travel planning tips ") == "travel-planning"
    assert format_label("***") == ""


def test_auto_label_waits_for_enough_messages(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([text_result("Coding Help")])
    labeler = AutoLabeler(manager, provider, model="label-model")
    _fill(manager, conv, MIN_MESSAGES_FOR_AUTO_LABEL - 1)
    assert labeler.generate(conv) is None
    assert provider.requests == []

    _fill(manager, conv, 1)
    assert labeler.generate(conv) == "coding-help"
    assert conv.label == "coding-help"
    assert manager.get(conv.id).label == "coding-help"
    assert provider.requests[0].model == "label-model"


def test_auto_label_skips_labelled_or_disabled(manager, chat):
    conv = manager.current_for(chat)
    _fill(manager, conv, MIN_MESSAGES_FOR_AUTO_LABEL)
    provider = FakeProvider([text_result("topic")])
    assert AutoLabeler(manager, provider, model="m", enabled=False).generate(conv) is None

    manager.set_label(conv.id, "manual")
    conv.label = "manual"
    assert AutoLabeler(manager, provider, model="m").generate(conv) is None
    assert provider.requests == []


def test_auto_label_ignores_taken_label(manager, chat):
    first = manager.current_for(chat)
    manager.set_label(first.id, "recipes")
    conv = manager.create_new(chat)
    _fill(manager, conv, MIN_MESSAGES_FOR_AUTO_LABEL)
    labeler = AutoLabeler(manager, FakeProvider([text_result("Recipes")]), model="m")
    assert labeler.generate(conv) is None
    assert manager.get(conv.id).label is None


def test_auto_label_provider_failure_is_swallowed(manager, chat):
    conv = manager.current_for(chat)
    _fill(manager, conv, MIN_MESSAGES_FOR_AUTO_LABEL)
    provider = FakeProvider([ApiError(code="API_ERROR", message="boom", http_status=500)])
    assert AutoLabeler(manager, provider, model="m").generate(conv) is None
