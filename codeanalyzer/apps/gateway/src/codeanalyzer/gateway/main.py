"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化与启动恢复、调度组件装配、路由注册；
关闭时取消运行中的任务、等待落盘并关闭连接。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from codeanalyzer.agent import AgentExecutor, build_registry, load_agent_config
from codeanalyzer.core.config import (
    get_db_path,
    get_log_retain_closed,
    get_max_concurrent_tasks,
    get_subscriber_queue_max,
)
from codeanalyzer.core.store import create_store_group
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from .errors import error_response
from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import agents, cancel, health, logs, stream, tasks
from .services.event_bus import EventBus
from .services.log_multiplexer import LogMultiplexer
from .services.scheduler import TaskScheduler

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    # 启动：初始化 Store，并在接受请求前完成中断任务恢复
    store_group = await create_store_group(get_db_path())
    app.state.store_group = store_group

    agent_config = load_agent_config()
    registry = build_registry(agent_config)
    executor = AgentExecutor(registry, timeout_s=agent_config.task_timeout_s)

    event_bus = EventBus(queue_maxsize=get_subscriber_queue_max())
    log_multiplexer = LogMultiplexer(event_bus, retain_closed=get_log_retain_closed())
    scheduler = TaskScheduler(
        store_group,
        executor,
        event_bus,
        log_multiplexer,
        max_concurrent_tasks=get_max_concurrent_tasks(),
    )
    recovered = await scheduler.recover()

    app.state.agent_config = agent_config
    app.state.agent_registry = registry
    app.state.event_bus = event_bus
    app.state.log_multiplexer = log_multiplexer
    app.state.scheduler = scheduler
    log.info(
        "gateway_started",
        agent_mode=agent_config.agent_mode,
        recovered_tasks=len(recovered),
        max_concurrent_tasks=get_max_concurrent_tasks(),
    )

    yield

    # 关闭：取消运行中的任务，落盘后关闭连接
    await scheduler.shutdown()
    await store_group.conn.close()


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """请求体校验失败统一为错误响应格式"""
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_response(
        422,
        "ValidationError",
        "Request validation failed",
        details=details,
        retryable=False,
    )


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Code Analyzer Gateway",
        version="0.1.0",
        description="代码库分析任务编排与日志流 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # 初始化日志
    setup_logging()
    setup_logfire(app)

    # 注册路由（tasks 中的 /api/tasks/pending 需先于 /api/tasks/{task_id}）
    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(logs.router, tags=["logs"])
    app.include_router(cancel.router, tags=["cancel"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(agents.router, tags=["agents"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
