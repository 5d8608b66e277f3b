"""packages/agent 测试配置 -- 可控 agent 与 Task 构造 fixture"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import pytest
from codeanalyzer.agent import AgentRegistry, EchoAgent, ExecutionContext
from codeanalyzer.core.models import LogStream, Task, TaskStatus, TaskType, derive_concurrency_key
from ulid import ULID


class ScriptedAgent:
    """按脚本输出日志的测试 agent

    release 事件被 set 之前一直阻塞，便于测试取消与超时。
    """

    name = "Scripted"

    def __init__(
        self,
        agent_id: str = "scripted",
        lines: list[tuple[LogStream, str]] | None = None,
        result: object = None,
        error: BaseException | None = None,
        block: bool = False,
    ) -> None:
        self.agent_id = agent_id
        self.lines = lines or [(LogStream.STDOUT, "hello\n")]
        self.result = {"ok": True} if result is None else result
        self.error = error
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.started = asyncio.Event()
        self.runs = 0

    async def detect(self) -> bool:
        return True

    async def run(self, task: Task, ctx: ExecutionContext):
        self.runs += 1
        self.started.set()
        for stream, data in self.lines:
            ctx.log(data, stream)
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def make_task() -> Callable[..., Task]:
    def _make(
        task_type: TaskType = TaskType.DOCUMENTATION,
        domain_id: str | None = "auth",
        agent: str = "echo",
        input_payload: dict | None = None,
    ) -> Task:
        if task_type.is_global:
            domain_id = None
        if input_payload is None:
            input_payload = {} if task_type.is_global else {"files": ["src/auth.py"]}
        task_id = str(ULID())
        return Task(
            task_id=task_id,
            type=task_type,
            concurrency_key=derive_concurrency_key(task_type, domain_id),
            domain_id=domain_id,
            status=TaskStatus.RUNNING,
            created_at=datetime.now(UTC),
            started_at=datetime.now(UTC),
            agent=agent,
            input_payload=input_payload,
            log_handle=f"logs/{task_id}",
        )

    return _make


@pytest.fixture
def registry() -> AgentRegistry:
    """只注册零延迟 echo agent 的注册表"""
    reg = AgentRegistry(default_agent="echo")
    reg.register(EchoAgent(delay_s=0))
    return reg


@pytest.fixture
def scripted_agent_cls() -> type[ScriptedAgent]:
    return ScriptedAgent
