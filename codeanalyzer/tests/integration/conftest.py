"""集成测试共享 fixture"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
import sse_starlette.sse
from httpx import ASGITransport, AsyncClient

_ENV_KEYS = ["CODEANALYZER_DB_PATH", "CODEANALYZER_AGENT_MODE", "LOGFIRE_SEND_TO_LOGFIRE"]


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    app_status = getattr(sse_starlette.sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def integration_env(tmp_path: Path):
    """集成测试环境变量，返回数据库路径"""
    db_path = tmp_path / "sqlite" / "integration.db"
    os.environ["CODEANALYZER_DB_PATH"] = str(db_path)
    os.environ["CODEANALYZER_AGENT_MODE"] = "echo"
    os.environ["LOGFIRE_SEND_TO_LOGFIRE"] = "false"
    yield db_path
    for key in _ENV_KEYS:
        os.environ.pop(key, None)


@pytest_asyncio.fixture
async def integration_app(integration_env: Path):
    """集成测试用 FastAPI app，完整执行 lifespan"""
    from codeanalyzer.gateway.main import create_app

    app = create_app()
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(integration_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=integration_app),
        base_url="http://test",
    ) as ac:
        yield ac
