"""EchoAgent -- 本地确定性 agent

不依赖外部 CLI 或 LLM，按固定节奏输出日志并返回回声结果。
echo 模式与测试统一使用此 agent。
"""

import asyncio
import time
from typing import Any

from codeanalyzer.core.models import LogStream, ProgressStage, Task, TaskType

from .base import ExecutionContext
from .exceptions import AgentProtocolError


class EchoAgent:
    """Echo agent

    input_payload 中的 user_context 可以携带调试指令：
        "echo:fail"   -- 以 AgentProtocolError 结束
        "echo:stderr" -- 额外输出一行 stderr
    """

    agent_id = "echo"
    name = "Echo"

    def __init__(self, delay_s: float = 0.01, lines: int = 3) -> None:
        self._delay_s = delay_s
        self._lines = lines

    async def detect(self) -> bool:
        return True

    async def run(self, task: Task, ctx: ExecutionContext) -> dict[str, Any]:
        start_time = time.monotonic()
        directive = str(task.input_payload.get("user_context", ""))

        ctx.progress(ProgressStage.INITIALIZING, f"Starting echo run for {task.type}")
        ctx.log(f"[echo] Task {task.task_id} ({task.type}) started\n")

        ctx.progress(ProgressStage.ANALYZING, "Echoing input")
        for i in range(self._lines):
            await asyncio.sleep(self._delay_s)
            ctx.log(f"[echo] line {i + 1}/{self._lines}\n")

        if "echo:stderr" in directive:
            ctx.log("[echo] warning: simulated stderr output\n", LogStream.STDERR)

        if "echo:fail" in directive:
            raise AgentProtocolError("Echo agent was asked to fail")

        ctx.progress(ProgressStage.SAVING, "Writing result")
        duration_ms = int((time.monotonic() - start_time) * 1000)
        return {
            "agent": self.agent_id,
            "echo": self._echo_content(task),
            "duration_ms": duration_ms,
        }

    @staticmethod
    def _echo_content(task: Task) -> str:
        """提取回声内容：chat 取最后一条 user 消息，其余取 user_context"""
        if task.type == TaskType.CHAT:
            for msg in reversed(task.input_payload.get("messages", [])):
                if msg.get("role") == "user":
                    return f"Echo: {msg.get('content', '')}"
            return "Echo: (empty)"
        return f"Echo: {task.input_payload.get('user_context') or task.type.value}"
