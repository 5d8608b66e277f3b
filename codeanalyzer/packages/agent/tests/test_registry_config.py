"""AgentRegistry 与 AgentConfig 测试

测试内容：
1. 未注册 agent 抛出 ValidationError
2. echo / live 模式注册的 agent 集合
3. 可用性探测异常视为不可用
4. 环境变量加载与非法值降级
"""

import pytest
from codeanalyzer.agent import AgentConfig, AgentRegistry, build_registry, load_agent_config
from codeanalyzer.core.exceptions import ValidationError


class _BrokenDetect:
    agent_id = "broken"
    name = "Broken"

    async def detect(self) -> bool:
        raise RuntimeError("detect crashed")

    async def run(self, task, ctx):
        return {}


class TestAgentRegistry:
    def test_get_unknown_agent(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.get("claude")
        assert exc_info.value.details[0]["allowed"] == ["echo"]

    def test_echo_mode_registers_only_echo(self):
        registry = build_registry(AgentConfig(agent_mode="echo"))
        assert [a["id"] for a in registry.describe()] == ["echo"]
        assert registry.default_agent == "echo"

    def test_live_mode_registers_all(self):
        registry = build_registry(AgentConfig(agent_mode="live", llm_model="gpt-4o-mini"))
        assert {a["id"] for a in registry.describe()} == {"echo", "llm-api", "aider", "gemini"}
        assert registry.default_agent == "llm-api"

    def test_unknown_default_falls_back_to_echo(self):
        registry = build_registry(AgentConfig(agent_mode="echo", default_agent="aider"))
        assert registry.default_agent == "echo"

    async def test_detect_errors_mean_unavailable(self, registry):
        registry.register(_BrokenDetect())
        available = await registry.detect_available()
        assert available == {"echo": True, "broken": False}


class TestAgentConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "CODEANALYZER_AGENT_MODE",
            "CODEANALYZER_DEFAULT_AGENT",
            "CODEANALYZER_TASK_TIMEOUT_S",
            "LITELLM_API_KEY",
        ):
            monkeypatch.delenv(name, raising=False)
        config = load_agent_config()
        assert config.agent_mode == "echo"
        assert config.task_timeout_s == 600
        assert config.resolved_default_agent == "echo"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CODEANALYZER_AGENT_MODE", "live")
        monkeypatch.setenv("CODEANALYZER_TASK_TIMEOUT_S", "30")
        monkeypatch.setenv("LITELLM_API_KEY", "sk-secret")
        monkeypatch.setenv("AIDER_EXTRA_ARGS", "--no-git --map-tokens 1024")
        config = load_agent_config()
        assert config.agent_mode == "live"
        assert config.task_timeout_s == 30
        assert config.llm_api_key.get_secret_value() == "sk-secret"
        assert "sk-secret" not in repr(config)
        assert config.aider_extra_args == ["--no-git", "--map-tokens", "1024"]

    def test_invalid_timeout_uses_default(self, monkeypatch):
        monkeypatch.setenv("CODEANALYZER_TASK_TIMEOUT_S", "soon")
        assert load_agent_config().task_timeout_s == 600
