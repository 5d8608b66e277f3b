"""AgentConfig -- Agent 配置加载

从环境变量加载配置，不硬编码 provider/模型名。
"""

import os
import shlex
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()


class AgentConfig(BaseModel):
    """Agent 包配置 -- 从环境变量加载

    环境变量:
        CODEANALYZER_AGENT_MODE: 运行模式（echo/live）
        CODEANALYZER_DEFAULT_AGENT: 未指定 agent 时使用的默认值
        CODEANALYZER_TASK_TIMEOUT_S: 单任务超时（秒，0 表示不限制）
        ANALYSIS_TARGET_DIR: 被分析代码库目录
        LITELLM_MODEL / LITELLM_API_BASE / LITELLM_API_KEY: llm-api agent 参数
        AIDER_MODEL / AIDER_EXTRA_ARGS: aider agent 参数
    """

    agent_mode: Literal["echo", "live"] = Field(
        default="echo",
        description="echo 模式只注册本地 echo agent",
    )
    default_agent: str = Field(default="", description="默认 agent，空值按模式推断")
    task_timeout_s: float = Field(default=600, ge=0, description="单任务超时（秒）")
    target_directory: str = Field(default=".", description="被分析代码库目录")
    llm_model: str = Field(default="gpt-4o-mini", description="llm-api 使用的模型")
    llm_api_base: str | None = Field(default=None, description="LLM API 基础 URL")
    llm_api_key: SecretStr = Field(default=SecretStr(""), description="LLM API 密钥")
    aider_model: str | None = Field(default=None, description="aider --model 参数")
    aider_extra_args: list[str] = Field(default_factory=list, description="aider 额外参数")
    echo_delay_s: float = Field(default=0.01, ge=0, description="echo agent 每行输出间隔")

    @property
    def resolved_default_agent(self) -> str:
        if self.default_agent:
            return self.default_agent
        return "echo" if self.agent_mode == "echo" else "llm-api"


def load_agent_config() -> AgentConfig:
    """从环境变量加载 Agent 配置

    Returns:
        AgentConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("CODEANALYZER_AGENT_MODE"):
        kwargs["agent_mode"] = val

    if val := os.environ.get("CODEANALYZER_DEFAULT_AGENT"):
        kwargs["default_agent"] = val

    if val := os.environ.get("CODEANALYZER_TASK_TIMEOUT_S"):
        try:
            kwargs["task_timeout_s"] = float(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var="CODEANALYZER_TASK_TIMEOUT_S",
                value=val,
                fallback=600,
            )
            # 使用默认值，不阻塞启动

    if val := os.environ.get("ANALYSIS_TARGET_DIR"):
        kwargs["target_directory"] = val

    if val := os.environ.get("LITELLM_MODEL"):
        kwargs["llm_model"] = val

    if val := os.environ.get("LITELLM_API_BASE"):
        kwargs["llm_api_base"] = val

    if val := os.environ.get("LITELLM_API_KEY"):
        kwargs["llm_api_key"] = SecretStr(val)

    if val := os.environ.get("AIDER_MODEL"):
        kwargs["aider_model"] = val

    if val := os.environ.get("AIDER_EXTRA_ARGS"):
        kwargs["aider_extra_args"] = shlex.split(val)

    return AgentConfig(**kwargs)
