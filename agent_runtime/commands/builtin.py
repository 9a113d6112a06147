"""内置斜杠命令。"""

from typing import Optional

from agent_runtime.conversations.manager import DEFAULT_KEEP_RECENT
from agent_runtime.domain.exceptions import InvalidFormat, LabelTaken, UsageError
from .base import Command, CommandContext, describe_conversation
from .registry import CommandRegistry


class HelpCommand(Command):
    name = "help"
    description = "Show available commands"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        lines = ["**Available commands**"]
        commands = context.registry.all() if context.registry else [self]
        for command in commands:
            lines.append(f"/{command.name} - {command.description or 'No description'}")
        return "\n".join(lines)


class StatusCommand(Command):
    name = "status"
    description = "Show current conversation status"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        conv = context.conversation
        cfg = context.settings
        lines = ["**Conversation Status**"]
        lines.append(f"ID: {conv.id}")
        lines.append(f"Label: {conv.label or '(no label)'}")
        if cfg is not None:
            lines.append(f"Model: {cfg.default_model}")
            lines.append(f"Max iterations: {cfg.max_iterations}")
        lines.append(f"Messages: {context.manager.message_count(conv)}")
        lines.append(f"Verbose: {'on' if conv.verbose else 'off'}")
        lines.append("")
        lines.append("**Token Usage:**")
        lines.append(f"Input:  {conv.input_tokens}")
        lines.append(f"Output: {conv.output_tokens}")
        lines.append(f"Total:  {conv.total_tokens}")
        return "\n".join(lines)


class ResetCommand(Command):
    name = "reset"
    description = "Clear conversation history and token counters"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        context.manager.reset(context.conversation)
        return f"Conversation {context.conversation.id} history and tokens cleared."


class NewCommand(Command):
    name = "new"
    description = "Start a new conversation"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        conv = context.manager.create_new(context.chat)
        context.conversation = conv
        return (
            f"**New conversation started (ID: {conv.id}).**\n"
            f"Use `/switch {conv.id}` to return later."
        )


class CompactCommand(Command):
    name = "compact"
    description = "Compress conversation by summarizing older messages"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        keep = DEFAULT_KEEP_RECENT
        if context.settings is not None:
            keep = context.settings.compact_keep_recent
        result = context.manager.compact(context.conversation, keep_recent_n=keep, provider=context.provider)
        summary = result.summary
        preview = summary if len(summary) <= 100 else summary[:100] + "..."
        return (
            f"Conversation {context.conversation.id} compacted.\n"
            f"{result.summarized_count} messages summarized, {result.kept_count} recent messages kept.\n"
            f"Summary: {preview}"
        )


class LabelCommand(Command):
    name = "label"
    description = "Show or set the conversation label"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        conv = context.conversation
        value = (args or "").strip()
        if not value:
            if conv.label:
                return f"Current label: {conv.label}"
            return "No label set. Use /label <name> to set one."
        try:
            updated = context.manager.set_label(conv.id, value)
        except (InvalidFormat, LabelTaken) as e:
            return e.message
        conv.label = updated.label
        return f"Label set to: {updated.label}"


class ConversationsCommand(Command):
    name = "conversations"
    description = "List conversations (use 'archived' to list archived ones)"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        show_archived = (args or "").strip().lower() == "archived"
        items = context.manager.list(context.chat, archived=show_archived)
        lines = ["**Archived Conversations**" if show_archived else "**Conversations**"]
        if not items:
            lines.append("No archived conversations found." if show_archived else "No conversations found.")
            return "\n".join(lines)
        for conv in items:
            prefix = "[current] " if conv.id == context.conversation.id else ""
            suffix = f" ({conv.label})" if conv.label else ""
            lines.append(f"{prefix}{conv.id}{suffix}")
        return "\n".join(lines)


class SwitchCommand(Command):
    name = "switch"
    description = "Switch to a conversation by label or ID"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        conv = context.manager.switch(context.chat, args)
        context.conversation = conv
        return "\n".join(["Switched to conversation:", *describe_conversation(context.manager, conv)])


class ArchiveCommand(Command):
    name = "archive"
    description = "Archive a conversation (current one if no argument)"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        result = context.manager.archive(context.chat, args)
        if result.new_conversation is None:
            return "\n".join(
                ["**Conversation archived successfully**", *describe_conversation(context.manager, result.archived)]
            )
        context.conversation = result.new_conversation
        return "\n".join(
            [
                "**Current conversation archived and new conversation started**",
                "",
                "Archived:",
                *describe_conversation(context.manager, result.archived),
                "",
                "New conversation:",
                f"- ID: {result.new_conversation.id}",
                "- Label: (no label)",
            ]
        )


class DeleteCommand(Command):
    name = "delete"
    description = "Permanently delete a conversation ('current' deletes the current one)"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        ident = (args or "").strip()
        if not ident:
            raise UsageError.of("Usage: /delete <current|label-or-id>")
        if ident.lower() == "current":
            result = context.manager.delete_current(context.chat)
            context.conversation = result.new_conversation
            return (
                f"Conversation {result.archived.id} deleted.\n"
                f"New conversation started (ID: {result.new_conversation.id})."
            )
        deleted = context.manager.delete(context.chat, ident)
        return f"Conversation {deleted.id} deleted."


class SystemPromptCommand(Command):
    name = "systemprompt"
    description = "Show the system prompt for this conversation"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        if context.system_prompt is None:
            return "No system prompt configured."
        return context.system_prompt(context.conversation)


class VerboseCommand(Command):
    name = "verbose"
    description = "Toggle display of tool calls (on/off)"

    def execute(self, context: CommandContext, args: Optional[str] = None) -> str:
        value = (args or "").strip().lower()
        if value == "on":
            context.manager.set_verbose(context.conversation, True)
            return "Verbose mode enabled. Tool calls will be shown."
        if value == "off":
            context.manager.set_verbose(context.conversation, False)
            return "Verbose mode disabled. Tool calls will be hidden."
        if not value:
            status = "on" if context.conversation.verbose else "off"
            return f"Verbose mode is currently {status}. Usage: /verbose [on|off]"
        return f"Unknown argument: {args}. Usage: /verbose [on|off]"


BUILTIN_COMMANDS = (
    HelpCommand,
    StatusCommand,
    ResetCommand,
    NewCommand,
    CompactCommand,
    LabelCommand,
    ConversationsCommand,
    SwitchCommand,
    ArchiveCommand,
    DeleteCommand,
    SystemPromptCommand,
    VerboseCommand,
)


def default_command_registry() -> CommandRegistry:
    registry = CommandRegistry()
    for command_cls in BUILTIN_COMMANDS:
        registry.register(command_cls)
    return registry
