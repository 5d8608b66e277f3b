"""packages/core 测试配置 -- 核心层 fixture"""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio
from codeanalyzer.core.models import Task, TaskStatus, TaskType, derive_concurrency_key
from ulid import ULID


@pytest_asyncio.fixture
async def core_db_path(tmp_path: Path) -> Path:
    """核心层临时数据库路径"""
    return tmp_path / "core_test.db"


@pytest_asyncio.fixture
async def core_db(core_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """核心层已初始化数据库连接"""
    from codeanalyzer.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(core_db_path))
    await init_db(conn)
    yield conn
    await conn.close()


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """构造测试用 Task，created_at 按调用顺序递增"""
    base = datetime(2025, 1, 1, tzinfo=UTC)
    counter = {"n": 0}

    def _make(
        task_type: TaskType = TaskType.DOCUMENTATION,
        domain_id: str | None = "auth",
        status: TaskStatus = TaskStatus.PENDING,
        **overrides,
    ) -> Task:
        counter["n"] += 1
        if task_type.is_global:
            domain_id = None
        task_id = str(ULID())
        fields = {
            "task_id": task_id,
            "type": task_type,
            "concurrency_key": derive_concurrency_key(task_type, domain_id),
            "domain_id": domain_id,
            "status": status,
            "created_at": base + timedelta(seconds=counter["n"]),
            "agent": "echo",
            "input_payload": {"files": ["src/auth.py"]},
            "log_handle": f"logs/{task_id}",
        }
        fields.update(overrides)
        return Task(**fields)

    return _make
