"""shell 工具：在本机 shell 中执行命令并返回 stdout/stderr/退出码。"""

import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional

from agent_runtime.domain.exceptions import CommandNotFound, PermissionDenied, ToolExecutionError
from .definitions import Tool, ToolOutput, ToolParam


@dataclass
class ShellOutput:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "success": self.success,
        }

    def __str__(self) -> str:
        return f"Exit: {self.exit_code}\nStdout:\n{self.stdout}\nStderr:\n{self.stderr}"


class ShellTool(Tool):
    name = "shell"
    description = "Execute a shell command and return stdout, stderr and the exit code"
    params = {
        "command": ToolParam(
            name="command",
            description="The shell command to execute",
            required=True,
            schema={"type": "string"},
        )
    }

    def __init__(self, timeout: float = 120.0, cwd: Optional[str] = None):
        self._timeout = timeout
        self._cwd = cwd

    def execute(self, command: str = "", **_: Any) -> ToolOutput:
        if not command or not command.strip():
            raise ToolExecutionError.of("Missing required argument: command", tool=self.name)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                cwd=self._cwd,
            )
        except subprocess.TimeoutExpired:
            raise ToolExecutionError.of(
                f"Command timed out after {self._timeout:g}s: {command}", tool=self.name
            )
        except PermissionError as e:
            raise PermissionDenied.of(f"Permission denied: {e}", tool=self.name)
        except FileNotFoundError as e:
            raise CommandNotFound.of(f"Command not found: {e}", tool=self.name)

        result = ShellOutput(stdout=proc.stdout, stderr=proc.stderr, exit_code=proc.returncode)
        # 非零退出码（含 126/127）作为正常结果返回给模型
        return ToolOutput(success=result.success, data=result.to_dict(), text=str(result))
