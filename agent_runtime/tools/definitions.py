"""工具数据结构定义。

这些类型描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在 LoopEngine 中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
- 约定具体工具的实现接口（Tool / ToolOutput）。
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def json_schema(self) -> Dict[str, Any]:
        """参数部分的 JSON Schema（OpenAI function 风格）。"""
        properties: Dict[str, Any] = {}
        required = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式），作为 observation 回填给模型。"""

    call_id: str
    content: str
    success: bool = True


@dataclass
class ToolOutput:
    """工具返回的结构化结果。

    - success: 工具层面的成功标记（例如 shell 的退出码是否为 0）。
    - data: 结构化字段，供日志与测试使用。
    - text: 回填给模型的文本。
    """

    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    text: str = ""

    def __str__(self) -> str:
        return self.text


class Tool:
    """具体工具的基类：name + params + execute(**kwargs)。"""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    params: ClassVar[Dict[str, ToolParam]] = {}

    def execute(self, **kwargs: Any) -> ToolOutput:
        raise NotImplementedError

    @classmethod
    def definition(cls) -> ToolDef:
        return ToolDef(name=cls.name, description=cls.description, params=dict(cls.params))
