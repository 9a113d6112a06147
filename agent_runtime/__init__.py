"""Agent Runtime 顶层包。

提供多通道对话 Agent 的运行时：配置加载、领域模型、Provider 适配、
工具与命令注册表、推理循环、会话管理、通道与通道监管，以及 JSON 持久化存储。
"""

from agent_runtime.agents.agent import Agent, build_agent, get_default_agent

__all__ = ["Agent", "build_agent", "get_default_agent"]
