"""LiteLLMAgent -- 直接调用 LLM API 的 agent

通过 litellm.acompletion(stream=True) 流式获取输出，
每个增量片段作为 stdout 日志推送。
"""

import json
import time
from typing import Any

import httpx
import structlog
from litellm import acompletion

from codeanalyzer.core.models import ProgressStage, Task

from .base import ExecutionContext
from .exceptions import AgentProtocolError, AgentUnavailableError
from .prompts import JSON_OUTPUT_TYPES, build_messages

log = structlog.get_logger()

# 可达性检测超时（硬编码，应快速响应）
DETECT_TIMEOUT_S = 5

# 连接类异常类型集合（映射为 AgentUnavailableError）
_CONNECTION_ERROR_TYPES = (
    ConnectionError,
    OSError,
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.TimeoutException,
)


def _is_connection_error(e: Exception) -> bool:
    """判断异常是否为连接类错误（端点不可达）"""
    if isinstance(e, _CONNECTION_ERROR_TYPES):
        return True
    # LiteLLM 的 APIConnectionError 也属于连接类错误
    error_name = type(e).__name__
    return error_name in (
        "APIConnectionError",
        "APITimeoutError",
        "ServiceUnavailableError",
        "RateLimitError",
    )


def parse_json_output(content: str) -> dict[str, Any]:
    """解析 LLM 输出中的 JSON 对象，允许 ```json 代码块包裹

    Raises:
        AgentProtocolError: 不是合法 JSON 对象
    """
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AgentProtocolError(f"Agent returned invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise AgentProtocolError("Agent returned JSON that is not an object")
    return data


class LiteLLMAgent:
    """LLM API agent

    封装 litellm.acompletion() 流式调用。
    """

    agent_id = "llm-api"
    name = "LLM API"

    def __init__(
        self,
        model: str,
        api_base: str | None = None,
        api_key: str = "",
        target_directory: str = ".",
        temperature: float = 0.2,
    ) -> None:
        """
        Args:
            model: LiteLLM 模型名（如 "gpt-4o-mini"、"anthropic/claude-..."）
            api_base: 自定义 API 基础 URL（LiteLLM Proxy 或兼容端点）
            api_key: API 密钥，空值时由 LiteLLM 读取 provider 环境变量
            target_directory: 被分析代码库目录
            temperature: 采样温度
        """
        self._model = model
        self._api_base = api_base.rstrip("/") if api_base else None
        self._api_key = api_key
        self._target_directory = target_directory
        self._temperature = temperature

    async def run(self, task: Task, ctx: ExecutionContext) -> dict[str, Any]:
        start_time = time.monotonic()
        messages = build_messages(task, self._target_directory)

        call_kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "stream": True,
        }
        if self._api_base:
            call_kwargs["api_base"] = self._api_base
        if self._api_key:
            call_kwargs["api_key"] = self._api_key

        ctx.progress(ProgressStage.INITIALIZING, f"Calling {self._model}")
        log.debug(
            "llm_agent_call_start",
            task_id=task.task_id,
            model=self._model,
            message_count=len(messages),
        )

        parts: list[str] = []
        try:
            response = await acompletion(**call_kwargs)
            ctx.progress(ProgressStage.PROCESSING, "Streaming model output")
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if delta:
                    parts.append(delta)
                    ctx.log(delta)
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            log.error(
                "llm_agent_call_failed",
                task_id=task.task_id,
                model=self._model,
                error_type=type(e).__name__,
                duration_ms=duration_ms,
            )
            if _is_connection_error(e):
                raise AgentUnavailableError(self.agent_id, type(e).__name__) from e
            raise AgentProtocolError(f"LLM call failed: {type(e).__name__}") from e

        content = "".join(parts)
        if not content.endswith("\n"):
            ctx.log("\n")
        duration_ms = int((time.monotonic() - start_time) * 1000)
        log.info(
            "llm_agent_call_completed",
            task_id=task.task_id,
            model=self._model,
            duration_ms=duration_ms,
            content_length=len(content),
        )

        ctx.progress(ProgressStage.SAVING, "Parsing model output")
        if task.type in JSON_OUTPUT_TYPES:
            return parse_json_output(content)
        return {"content": content}

    async def detect(self) -> bool:
        """检测 LLM 端点是否已配置且可达

        注意: 此方法不抛出异常，所有异常内部捕获并返回 False。
        """
        if not self._api_base:
            return bool(self._api_key)
        url = f"{self._api_base}/models"
        try:
            async with httpx.AsyncClient() as http_client:
                resp = await http_client.get(url, timeout=DETECT_TIMEOUT_S)
                return resp.status_code < 500
        except Exception as e:
            log.debug("llm_agent_detect_failed", url=url, error=str(e))
            return False
