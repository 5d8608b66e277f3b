"""AgentRegistry -- agent 标识到实例的映射

echo 模式只注册 echo agent；live 模式额外注册 llm-api、aider、gemini。
"""

import asyncio

import structlog

from codeanalyzer.core.exceptions import ValidationError

from .base import Agent
from .cli_agent import aider_agent, gemini_agent
from .config import AgentConfig
from .echo_agent import EchoAgent
from .llm_agent import LiteLLMAgent

log = structlog.get_logger()


class AgentRegistry:
    """Agent 注册表"""

    def __init__(self, default_agent: str = "echo") -> None:
        self._agents: dict[str, Agent] = {}
        self.default_agent = default_agent

    def register(self, agent: Agent) -> None:
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str) -> Agent:
        """按标识获取 agent

        Raises:
            ValidationError: 未注册的 agent
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ValidationError(
                f"Unsupported agent '{agent_id}'",
                details=[{"field": "agent", "allowed": sorted(self._agents)}],
            )
        return agent

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def describe(self) -> list[dict[str, str]]:
        """列出已注册 agent 的基本信息"""
        return [
            {
                "id": agent.agent_id,
                "name": agent.name,
                "install_url": getattr(agent, "install_url", ""),
            }
            for agent in self._agents.values()
        ]

    async def detect_available(self) -> dict[str, bool]:
        """并发检测各 agent 是否可用，检测异常视为不可用"""
        ids = list(self._agents)
        results = await asyncio.gather(
            *(self._agents[i].detect() for i in ids),
            return_exceptions=True,
        )
        available: dict[str, bool] = {}
        for agent_id, result in zip(ids, results, strict=True):
            if isinstance(result, BaseException):
                log.warning(
                    "agent_detect_error",
                    agent=agent_id,
                    error_type=type(result).__name__,
                )
                available[agent_id] = False
            else:
                available[agent_id] = bool(result)
        return available


def build_registry(config: AgentConfig) -> AgentRegistry:
    """按配置构建注册表"""
    registry = AgentRegistry(default_agent=config.resolved_default_agent)
    registry.register(EchoAgent(delay_s=config.echo_delay_s))

    if config.agent_mode == "live":
        registry.register(
            LiteLLMAgent(
                model=config.llm_model,
                api_base=config.llm_api_base,
                api_key=config.llm_api_key.get_secret_value(),
                target_directory=config.target_directory,
            )
        )
        registry.register(
            aider_agent(
                config.target_directory,
                model=config.aider_model,
                extra_args=config.aider_extra_args,
            )
        )
        registry.register(gemini_agent(config.target_directory))

    if not registry.has(registry.default_agent):
        log.warning(
            "default_agent_not_registered",
            default_agent=registry.default_agent,
            fallback="echo",
        )
        registry.default_agent = "echo"

    log.info(
        "agent_registry_built",
        mode=config.agent_mode,
        agents=[a["id"] for a in registry.describe()],
        default_agent=registry.default_agent,
    )
    return registry
