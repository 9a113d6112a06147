"""系统提示词加载工具。

从 prompts 目录读取 system prompt 模板，并填入运行环境与会话信息，
用于构造 ChatMessage(role="system")。
"""

import os
import platform
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(name: str = "system") -> str:
    """按名称加载提示词模板文本。"""

    fname = PROMPTS_DIR / f"{name}.md"
    return fname.read_text(encoding="utf-8")


def render_system_prompt(
    conversation_id: str,
    label: Optional[str] = None,
    tools: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> str:
    now = (now or datetime.now()).astimezone()
    return load_system_prompt().format(
        os=f"{platform.system()} {platform.release()}".strip(),
        shell=os.environ.get("SHELL", "unknown"),
        cwd=os.getcwd(),
        date=now.strftime("%Y-%m-%d"),
        time=now.strftime("%H:%M:%S %Z"),
        conversation_id=conversation_id,
        label=label or "(none)",
        tools=", ".join(tools) or "(none)",
    )
