import threading

import pytest

from agent_runtime.agents.loop_engine import LoopConfig, LoopEngine, format_tool_call, format_tool_result
from agent_runtime.domain.exceptions import MaxIterationsExceeded, ToolExecutionError
from agent_runtime.tools.definitions import Tool, ToolCall, ToolOutput
from agent_runtime.tools.registry import ToolRegistry
from agent_runtime.tools.shell import ShellTool
from fakes import EchoTool, FakeProvider, text_result, tool_call_result


class FlakyTool(Tool):
    name = "flaky"
    description = "Fails a configurable number of times"
    failures = 0
    attempts = 0

    def execute(self, **_):
        FlakyTool.attempts += 1
        if FlakyTool.attempts <= FlakyTool.failures:
            raise ToolExecutionError.of("boom", tool=self.name)
        return ToolOutput(success=True, text="recovered")


@pytest.fixture(autouse=True)
def _reset_flaky():
    FlakyTool.failures = 0
    FlakyTool.attempts = 0


def _engine(manager, provider, tools=None, max_iterations=5, system_prompt=None):
    registry = ToolRegistry()
    for tool_cls in tools or ():
        registry.register(tool_cls)
    config = LoopConfig(model="test-model", max_iterations=max_iterations)
    return LoopEngine(manager, provider, registry, config, system_prompt=system_prompt)


def _tool_messages(provider):
    return [m for m in provider.requests[-1].messages if m.role == "tool"]


def test_final_answer_is_stored(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([text_result("Paris", prompt_tokens=12, completion_tokens=3)])
    outcome = _engine(manager, provider).run(conv, "Capital of France?")

    assert outcome.kind == "final"
    assert outcome.unwrap() == "Paris"
    assert outcome.iterations == 1
    history = manager.history(conv)
    assert [(m.role, m.content) for m in history] == [("user", "Capital of France?"), ("assistant", "Paris")]
    assert history[1].input_tokens == 12
    assert manager.get(conv.id).total_tokens == 15


def test_system_prompt_and_history_are_sent(manager, chat):
    conv = manager.current_for(chat)
    manager.append(conv, "user", "earlier")
    manager.append(conv, "assistant", "reply")
    provider = FakeProvider()
    _engine(manager, provider, system_prompt=lambda c: f"system for {c.id}").run(conv, "now")

    messages = provider.requests[0].messages
    assert messages[0].role == "system"
    assert messages[0].content == f"system for {conv.id}"
    assert [m.content for m in messages[1:]] == ["earlier", "reply", "now"]


def test_tool_call_then_answer(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("echo", {"text": "pong"})), text_result("done")])
    outcome = _engine(manager, provider, tools=[EchoTool]).run(conv, "ping")

    assert outcome.content == "done"
    assert outcome.iterations == 2
    assert len(provider.requests) == 2
    tool_msgs = _tool_messages(provider)
    assert [(m.content, m.tool_call_id) for m in tool_msgs] == [("pong", "call_0")]
    assert [t.name for t in provider.requests[0].tools] == ["echo"]
    # 工具中间消息不写入会话历史
    assert [m.role for m in manager.history(conv)] == ["user", "assistant"]


def test_max_iterations_makes_exactly_limit_calls(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("echo", {"text": str(i)})) for i in range(10)])
    outcome = _engine(manager, provider, tools=[EchoTool]).run(conv, "loop", max_iterations=3)

    assert outcome.kind == "max_iterations"
    assert outcome.limit == 3
    assert len(provider.requests) == 3
    assert outcome.message == (
        "I've reached my thinking limit (3 iterations). Please try a more specific question."
    )
    with pytest.raises(MaxIterationsExceeded) as exc:
        outcome.unwrap()
    assert exc.value.limit == 3


def test_nonzero_shell_exit_is_an_observation(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("shell", {"command": "echo oops >&2; exit 3"})), text_result("seen")])
    outcome = _engine(manager, provider, tools=[ShellTool]).run(conv, "run it")

    assert outcome.content == "seen"
    observation = _tool_messages(provider)[0].content
    assert observation.startswith("Exit: 3")
    assert "oops" in observation


def test_missing_command_runs_once_and_reports_exit_127(manager, chat, tmp_path):
    target = tmp_path / "appended.txt"
    command = f"echo x >> {target}; no_such_cmd_zz"
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("shell", {"command": command})), text_result("done")])
    _engine(manager, provider, tools=[ShellTool]).run(conv, "append then fail")

    assert target.read_text(encoding="utf-8").splitlines() == ["x"]
    assert _tool_messages(provider)[0].content.startswith("Exit: 127")


def test_zero_max_iterations_makes_no_calls(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([text_result("never")])
    outcome = _engine(manager, provider).run(conv, "hi", max_iterations=0)

    assert outcome.kind == "max_iterations"
    assert outcome.limit == 0
    assert provider.requests == []


def test_tool_retries_then_succeeds(manager, chat):
    FlakyTool.failures = 2
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("flaky", {})), text_result("ok")])
    _engine(manager, provider, tools=[FlakyTool]).run(conv, "try")

    assert FlakyTool.attempts == 3
    assert _tool_messages(provider)[0].content == "recovered"


def test_tool_failure_becomes_error_observation(manager, chat):
    FlakyTool.failures = 99
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("flaky", {}), ("missing", {})), text_result("ok")])
    outcome = _engine(manager, provider, tools=[FlakyTool]).run(conv, "try")

    assert outcome.kind == "final"
    assert FlakyTool.attempts == 3
    contents = [m.content for m in _tool_messages(provider)]
    assert contents == ["Error: boom", "Error: Unknown tool: missing"]


def test_verbose_reports_tool_calls(manager, chat):
    conv = manager.current_for(chat)
    manager.set_verbose(conv, True)
    provider = FakeProvider([tool_call_result(("echo", {"text": "pong"})), text_result("done")])
    notices = []
    _engine(manager, provider, tools=[EchoTool]).run(conv, "ping", verbose_callback=notices.append)

    call = ToolCall(id="call_0", name="echo", arguments={"text": "pong"})
    assert notices == [format_tool_call(call), format_tool_result("pong")]


def test_verbose_off_sends_nothing(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider([tool_call_result(("echo", {"text": "pong"})), text_result("done")])
    notices = []
    _engine(manager, provider, tools=[EchoTool]).run(conv, "ping", verbose_callback=notices.append)
    assert notices == []


def test_cancel_before_model_call(manager, chat):
    conv = manager.current_for(chat)
    provider = FakeProvider()
    cancel = threading.Event()
    cancel.set()
    outcome = _engine(manager, provider).run(conv, "hi", cancel_event=cancel)

    assert outcome.kind == "interrupted"
    assert provider.requests == []


def test_format_helpers():
    assert format_tool_result("") == "📥 **Result**\n```\n(empty)\n```"
    long_result = format_tool_result("x" * 600)
    assert "x" * 500 + "..." in long_result
    call = ToolCall(id="c", name="shell", arguments={"command": "ls"})
    assert format_tool_call(call).startswith("🔧 **Tool** `shell`\n```json\n")
