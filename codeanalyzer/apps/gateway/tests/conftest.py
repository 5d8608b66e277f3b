"""apps/gateway 测试配置 -- 调度组件 fixture + FastAPI AsyncClient"""

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
import sse_starlette.sse
from codeanalyzer.agent import AgentExecutor, AgentRegistry, EchoAgent, ExecutionContext
from codeanalyzer.core.models import Task
from codeanalyzer.core.store import StoreGroup, create_store_group
from codeanalyzer.gateway.services.event_bus import EventBus
from codeanalyzer.gateway.services.log_multiplexer import LogMultiplexer
from codeanalyzer.gateway.services.scheduler import TaskScheduler
from httpx import ASGITransport, AsyncClient


class ScriptedAgent:
    """按脚本输出日志的测试 agent，block=True 时等待 release 后才结束"""

    name = "Scripted"

    def __init__(
        self,
        agent_id: str = "scripted",
        lines: list[str] | None = None,
        result: dict | None = None,
        block: bool = False,
    ) -> None:
        self.agent_id = agent_id
        self.lines = ["hello\n"] if lines is None else lines
        self.result = {"ok": True} if result is None else result
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.started = asyncio.Event()

    async def detect(self) -> bool:
        return True

    async def run(self, task: Task, ctx: ExecutionContext) -> dict:
        self.started.set()
        for line in self.lines:
            ctx.log(line)
        await self.release.wait()
        return self.result


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette 的退出事件会绑定到首个事件循环，每个测试前重置"""
    app_status = getattr(sse_starlette.sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def scripted_agent_cls() -> type[ScriptedAgent]:
    return ScriptedAgent


@pytest_asyncio.fixture
async def store_group(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    sg = await create_store_group(str(tmp_path / "sqlite" / "scheduler.db"))
    yield sg
    await sg.conn.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(queue_maxsize=100)


@pytest.fixture
def log_multiplexer(event_bus: EventBus) -> LogMultiplexer:
    return LogMultiplexer(event_bus, retain_closed=10)


@pytest.fixture
def registry() -> AgentRegistry:
    reg = AgentRegistry(default_agent="echo")
    reg.register(EchoAgent(delay_s=0))
    return reg


@pytest_asyncio.fixture
async def make_scheduler(store_group, registry, event_bus, log_multiplexer):
    """构造调度器；测试结束时统一 shutdown"""
    created: list[TaskScheduler] = []

    def _make(
        max_concurrent_tasks: int = 0,
        executor: AgentExecutor | None = None,
    ) -> TaskScheduler:
        sched = TaskScheduler(
            store_group,
            executor or AgentExecutor(registry),
            event_bus,
            log_multiplexer,
            max_concurrent_tasks=max_concurrent_tasks,
        )
        created.append(sched)
        return sched

    yield _make

    for sched in created:
        await sched.shutdown(timeout_s=2)


@pytest_asyncio.fixture
async def scheduler(make_scheduler: Callable[..., TaskScheduler]) -> TaskScheduler:
    return make_scheduler()


@pytest_asyncio.fixture
async def gateway_tmp_dir(tmp_path: Path) -> Path:
    """Gateway 临时数据目录"""
    db_dir = tmp_path / "sqlite"
    db_dir.mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest_asyncio.fixture
async def app(gateway_tmp_dir: Path):
    """创建测试用 FastAPI app 实例，并执行 lifespan 启动/关闭"""
    os.environ["CODEANALYZER_DB_PATH"] = str(gateway_tmp_dir / "sqlite" / "test.db")
    os.environ["CODEANALYZER_AGENT_MODE"] = "echo"
    os.environ["LOGFIRE_SEND_TO_LOGFIRE"] = "false"

    from codeanalyzer.gateway.main import create_app

    application = create_app()
    async with application.router.lifespan_context(application):
        yield application

    for key in ["CODEANALYZER_DB_PATH", "CODEANALYZER_AGENT_MODE", "LOGFIRE_SEND_TO_LOGFIRE"]:
        os.environ.pop(key, None)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
