"""任务持久化事务封装

在同一 SQLite 事务内原子提交任务记录与日志文本，
保证终态任务落盘时记录和完整日志同时可见。

所有 Store 共享一个连接，SQLite 的隐式事务是连接级别的：
两个任务的写入若在 await 处交错，一方的 rollback 会撤销另一方尚未提交的语句，
一方的 commit 也会提前提交另一方写了一半的数据。
因此同一连接上的每个写事务都必须持有该连接的写锁。
"""

import asyncio
import weakref

import aiosqlite

from ..models.task import Task
from .log_store import SqliteLogStore
from .task_store import SqliteTaskStore

_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def connection_write_lock(conn: aiosqlite.Connection) -> asyncio.Lock:
    """返回连接级写锁（同一连接始终得到同一把锁）

    asyncio.Lock 不可重入：持锁期间不要再调用本模块的其他事务函数。
    """
    lock = _write_locks.get(conn)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[conn] = lock
    return lock


async def save_task(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    task: Task,
) -> None:
    """写入任务快照并提交

    Raises:
        Exception: 如果事务提交失败，自动回滚
    """
    async with connection_write_lock(conn):
        try:
            await task_store.save_task(task)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def finalize_task(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    log_store: SqliteLogStore,
    task: Task,
    log_text: str,
    chunk_count: int,
) -> None:
    """在同一事务内原子提交终态任务与完整日志

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        task_store: TaskStore 实例
        log_store: LogStore 实例
        task: 终态任务快照
        log_text: 拼接后的日志文本
        chunk_count: 日志片段数量

    Raises:
        Exception: 如果事务提交失败，自动回滚
    """
    async with connection_write_lock(conn):
        try:
            await task_store.save_task(task)
            await log_store.save_log(task.task_id, log_text, chunk_count)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def delete_task_with_log(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    log_store: SqliteLogStore,
    task_id: str,
) -> bool:
    """在同一事务内删除任务与日志

    Returns:
        任务记录是否存在
    """
    async with connection_write_lock(conn):
        try:
            existed = await task_store.delete_task(task_id)
            await log_store.delete_log(task_id)
            await conn.commit()
            return existed
        except Exception:
            await conn.rollback()
            raise
