"""Agent 协议与执行上下文

Agent 只负责产出日志与结果，不直接修改 Task 记录。
"""

from typing import Any, Protocol

from codeanalyzer.core.models import LogStream, Task


class ExecutionContext:
    """单次执行的上下文，agent 通过它输出日志和进度"""

    def __init__(self, task: Task, emit_chunk, emit_progress) -> None:
        self.task = task
        self._emit_chunk = emit_chunk
        self._emit_progress = emit_progress

    def log(self, data: str, stream: LogStream = LogStream.STDOUT) -> None:
        """输出一段日志"""
        if data:
            self._emit_chunk(LogStream(stream), data)

    def progress(self, stage: str, message: str = "") -> None:
        """上报进度阶段"""
        self._emit_progress(stage, message)


class Agent(Protocol):
    """Agent 接口"""

    agent_id: str
    name: str

    async def run(self, task: Task, ctx: ExecutionContext) -> dict[str, Any]:
        """执行任务，返回结果 dict

        Raises:
            AgentError: 不可用、协议错误等
        """
        ...

    async def detect(self) -> bool:
        """检测 agent 在当前环境是否可用"""
        ...
