"""Code Analyzer Agent -- 分析任务执行层

packages/agent 的公开接口导出。
"""

from .base import Agent, ExecutionContext
from .cli_agent import CliAgent, aider_agent, gemini_agent
from .config import AgentConfig, load_agent_config
from .echo_agent import EchoAgent

# 异常
from .exceptions import (
    AgentError,
    AgentProtocolError,
    AgentTimeoutError,
    AgentUnavailableError,
)

# 核心组件
from .executor import AgentExecutor, ExecutionHandle, ExecutionOutcome, enrich_result
from .llm_agent import LiteLLMAgent
from .registry import AgentRegistry, build_registry

__all__ = [
    "Agent",
    "ExecutionContext",
    "AgentExecutor",
    "ExecutionHandle",
    "ExecutionOutcome",
    "enrich_result",
    "AgentRegistry",
    "build_registry",
    "EchoAgent",
    "LiteLLMAgent",
    "CliAgent",
    "aider_agent",
    "gemini_agent",
    "AgentConfig",
    "load_agent_config",
    "AgentError",
    "AgentUnavailableError",
    "AgentProtocolError",
    "AgentTimeoutError",
]
