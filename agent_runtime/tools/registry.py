import threading
from typing import Any, Dict, List, Optional, Type

from agent_runtime.config.settings import settings as default_settings
from agent_runtime.domain.exceptions import BusinessError, ToolExecutionError, UnknownTool
from .definitions import Tool, ToolDef, ToolOutput


class ToolRegistry:
    """按名称保存可调用工具的注册表。

    启动时显式构造并注入 Agent，工具通过名称查表分发，
    不依赖导入副作用或反射。
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}
        self._lock = threading.Lock()

    def register(self, tool_cls: Type[Tool], **constructor_args: Any) -> Tool:
        """注册工具类；同名工具重复注册时返回已有实例。"""
        with self._lock:
            existing = self._tools.get(tool_cls.name)
            if existing is not None:
                return existing
            tool = tool_cls(**constructor_args)
            self._tools[tool_cls.name] = tool
            return tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def tool_defs(self) -> List[ToolDef]:
        return [tool.definition() for tool in self._tools.values()]

    def schemas(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool_def.name,
                "description": tool_def.description,
                "parameters": tool_def.json_schema(),
            }
            for tool_def in self.tool_defs()
        ]

    def execute(self, name: str, arguments: Dict[str, Any]) -> ToolOutput:
        """执行指定工具。

        Raises:
            UnknownTool: 工具未注册。
            ToolExecutionError: 工具自身的领域错误，或参数不匹配等意外异常。
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool.of(f"Unknown tool: {name}", tool=name)
        try:
            return tool.execute(**(arguments or {}))
        except BusinessError:
            raise
        except TypeError as e:
            raise ToolExecutionError.of(f"Invalid arguments for {name}: {e}", tool=name)
        except Exception as e:
            raise ToolExecutionError.of(str(e) or e.__class__.__name__, tool=name)


def default_tool_registry(cfg=default_settings) -> ToolRegistry:
    """构造内置工具集：shell 与 web_search。"""
    from .shell import ShellTool
    from .web_search import WebSearchTool

    registry = ToolRegistry()
    registry.register(ShellTool, timeout=cfg.shell_timeout)
    registry.register(WebSearchTool, searxng_url=cfg.searxng_url, timeout=cfg.http_timeout)
    return registry
