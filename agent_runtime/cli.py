"""命令行入口（typer）。

  agent-runtime send "message"   一次性对话
  agent-runtime repl             交互式终端会话
  agent-runtime gateway          后台运行所有已配置的通道（Telegram 等）
  agent-runtime status           查看配置与通道状态
"""

from typing import Optional

import typer

from agent_runtime.agents.agent import build_agent
from agent_runtime.channels.cli import SOURCE_ID, CliChannel
from agent_runtime.channels.registry import default_channel_registry
from agent_runtime.channels.supervisor import EXCLUDED_CHANNELS, ChannelSupervisor
from agent_runtime.config.settings import settings
from agent_runtime.domain.exceptions import BusinessError

app = typer.Typer(
    help="Agent runtime: chat with a tool-using agent from the terminal or chat channels.",
    add_completion=False,
    no_args_is_help=True,
)


@app.command()
def send(
    message: str = typer.Argument(..., help="Message to send"),
    timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the answer"),
) -> None:
    """Send one message to the current CLI conversation and print the answer."""
    try:
        agent = build_agent(settings)
    except BusinessError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)
    chat = agent.manager.chat_for(CliChannel.name, SOURCE_ID, SOURCE_ID)
    if agent.is_command(message):
        reply, _ = agent.handle_command(chat, message.strip(), SOURCE_ID)
    else:
        reply = agent.send(chat, message, timeout=timeout)
    typer.echo(reply)
    if reply.startswith("Error:"):
        raise typer.Exit(code=1)


@app.command()
def repl() -> None:
    """Start an interactive terminal session."""
    CliChannel(build_agent(settings), settings).start()


@app.command()
def gateway() -> None:
    """Run every configured background channel until interrupted."""
    agent = build_agent(settings)
    supervisor = ChannelSupervisor(agent, default_channel_registry(), settings)
    supervisor.start_channels()
    if supervisor.thread_count() == 0:
        typer.echo("No channels configured; nothing to run.", err=True)
        supervisor.stop_all()
        raise typer.Exit(code=1)
    typer.echo(f"Running channels: {', '.join(supervisor.all_statuses())}. Press Ctrl+C to stop.")
    supervisor.wait()


@app.command()
def status() -> None:
    """Show provider settings and which channels are configured."""
    typer.echo(f"Provider: {settings.default_provider}")
    typer.echo(f"Model: {settings.default_model}")
    typer.echo(f"Storage: {settings.storage_root}")
    for name, channel_cls in default_channel_registry().items():
        if name in EXCLUDED_CHANNELS:
            continue
        missing = [key for key in channel_cls.required_config if not getattr(settings, key, None)]
        state = "configured" if not missing else f"missing {', '.join(missing)}"
        typer.echo(f"Channel {name}: {state}")


if __name__ == "__main__":
    app()
