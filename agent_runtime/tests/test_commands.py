from datetime import datetime, timedelta, timezone

import pytest

from agent_runtime.commands import CommandContext, CommandRegistry, default_command_registry, format_time_ago
from fakes import SettingsStub


@pytest.fixture
def registry():
    return default_command_registry()


@pytest.fixture
def context(manager, chat, provider):
    return CommandContext(
        conversation=manager.current_for(chat),
        chat=chat,
        channel="test",
        user_id="alice",
        manager=manager,
        provider=provider,
        settings=SettingsStub(),
        system_prompt=lambda conv: f"prompt for {conv.id}",
    )


def test_parse():
    assert CommandRegistry.parse("/switch  work ") == ("switch", "work")
    assert CommandRegistry.parse("/help") == ("help", None)
    assert CommandRegistry.parse("hello /help") is None
    assert CommandRegistry.parse("/bad-name") is None


def test_is_command_only_for_registered(registry):
    assert registry.is_command("/status")
    assert not registry.is_command("/nonsense")
    assert not registry.is_command("plain text")


def test_unknown_command(registry, context):
    assert registry.execute("/nonsense arg", context) == "Unknown command: /nonsense. Type /help for available commands."


def test_help_lists_commands(registry, context):
    reply = registry.execute("/help", context)
    for name in registry.names():
        assert f"/{name} - " in reply


def test_status(registry, context):
    reply = registry.execute("/status", context)
    assert f"ID: {context.conversation.id}" in reply
    assert "Model: test-model" in reply
    assert "Total:  0" in reply


def test_label_flow(registry, context):
    assert registry.execute("/label", context) == "No label set. Use /label <name> to set one."
    assert registry.execute("/label work", context) == "Label set to: work"
    assert registry.execute("/label", context) == "Current label: work"
    assert registry.execute("/label bad label!", context).startswith("Invalid label format.")


def test_label_taken_is_reported(registry, context, manager, chat):
    other = manager.create_new(chat)
    manager.set_label(other.id, "taken")
    reply = registry.execute("/label taken", context)
    assert reply == "Label 'taken' already in use by another conversation"


def test_new_and_switch(registry, context):
    original = context.conversation
    registry.execute("/label first", context)
    reply = registry.execute("/new", context)
    assert context.conversation.id != original.id
    assert f"ID: {context.conversation.id}" in reply

    reply = registry.execute("/switch first", context)
    assert reply.startswith("Switched to conversation:")
    assert context.conversation.id == original.id


def test_switch_errors(registry, context):
    assert registry.execute("/switch", context) == "Usage: /switch <label-or-id>"
    assert registry.execute("/switch ghost", context) == "Error: Conversation 'ghost' not found"


def test_archive_current(registry, context, manager, chat):
    original = context.conversation
    reply = registry.execute("/archive", context)
    assert reply.startswith("**Current conversation archived and new conversation started**")
    assert context.conversation.id != original.id
    assert manager.get(original.id).archived

    listing = registry.execute("/conversations archived", context)
    assert original.id in listing


def test_archive_current_by_id_is_rejected(registry, context):
    reply = registry.execute(f"/archive {context.conversation.id}", context)
    assert reply.startswith("Error: Cannot archive the current conversation.")


def test_conversations_marks_current(registry, context, manager, chat):
    other = manager.create_new(chat)
    manager.set_label(other.id, "side")
    registry.execute("/switch side", context)
    listing = registry.execute("/conversations", context).splitlines()
    assert listing[0] == "**Conversations**"
    assert f"[current] {other.id} (side)" in listing


def test_delete(registry, context, manager, chat):
    original = context.conversation
    reply = registry.execute("/delete current", context)
    assert reply.startswith(f"Conversation {original.id} deleted.")
    assert context.conversation.id != original.id
    assert registry.execute("/delete", context) == "Usage: /delete <current|label-or-id>"


def test_reset_and_compact(registry, context, manager):
    conv = context.conversation
    manager.append(conv, "user", "hello", input_tokens=2)
    assert registry.execute("/reset", context) == f"Conversation {conv.id} history and tokens cleared."
    assert manager.message_count(conv) == 0
    assert registry.execute("/compact", context) == "Error: Need at least 10 messages to compact. Current: 0"

    for i in range(10):
        manager.append(conv, "user", f"m{i}")
    reply = registry.execute("/compact", context)
    assert "5 messages summarized, 5 recent messages kept." in reply
    assert "Summary: summary text" in reply


def test_verbose_and_systemprompt(registry, context, manager):
    assert registry.execute("/verbose", context).startswith("Verbose mode is currently off")
    assert registry.execute("/verbose on", context) == "Verbose mode enabled. Tool calls will be shown."
    assert manager.get(context.conversation.id).verbose is True
    assert registry.execute("/verbose maybe", context) == "Unknown argument: maybe. Usage: /verbose [on|off]"
    assert registry.execute("/systemprompt", context) == f"prompt for {context.conversation.id}"


def test_format_time_ago():
    now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    assert format_time_ago(None) == "no activity"
    assert format_time_ago(now - timedelta(seconds=30), now) == "just now"
    assert format_time_ago(now - timedelta(minutes=5), now) == "5 minutes ago"
    assert format_time_ago(now - timedelta(hours=3), now) == "3 hours ago"
    assert format_time_ago(now - timedelta(days=2), now) == "2 days ago"
    assert format_time_ago(now - timedelta(days=30), now) == "2025-12-11 12:00 UTC"
