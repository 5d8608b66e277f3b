"""全局 pytest 配置 -- 临时 SQLite 数据库 fixture"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import aiosqlite
import pytest_asyncio

# 测试环境无网络: litellm 使用本地模型价格表, 避免导入时远程拉取
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from codeanalyzer.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_db_path))
    await init_db(conn)
    yield conn
    await conn.close()
