"""启动恢复模块

进程重启后，持久化中仍处于 PENDING/RUNNING 的任务已无执行者，
统一标记为 FAILED（ProcessRestarted，可重试），不做自动续跑。
"""

import time
from datetime import UTC, datetime

import aiosqlite
import structlog

from .models.enums import ACTIVE_STATES, ErrorCode, TaskStatus
from .models.task import Task
from .store.log_store import SqliteLogStore
from .store.task_store import SqliteTaskStore
from .store.transaction import connection_write_lock

log = structlog.get_logger()

PROCESS_RESTARTED_MESSAGE = (
    "ProcessRestarted: task was interrupted by a server restart (retryable)"
)


def mark_interrupted(task: Task, now: datetime | None = None) -> Task:
    """返回标记为 ProcessRestarted 失败的任务副本（内存中操作）"""
    return task.model_copy(
        update={
            "status": TaskStatus.FAILED,
            "finished_at": now or datetime.now(UTC),
            "error": PROCESS_RESTARTED_MESSAGE,
            "error_code": ErrorCode.PROCESS_RESTARTED,
            "retryable": True,
        }
    )


async def recover_interrupted_tasks(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    log_store: SqliteLogStore,
) -> list[Task]:
    """把中断的任务标记为 FAILED

    流程：
    1. 查询所有 PENDING/RUNNING 任务
    2. 逐个改写为 FAILED + ProcessRestarted
    3. 已有日志的保留原文并追加说明行，无日志的写入说明行
    4. 单事务提交，失败回滚

    Returns:
        被标记失败的任务列表
    """
    start_time = time.monotonic()
    async with connection_write_lock(conn):
        interrupted = await task_store.list_by_status(ACTIVE_STATES)
        if not interrupted:
            return []

        now = datetime.now(UTC)
        recovered: list[Task] = []
        try:
            for task in interrupted:
                failed = mark_interrupted(task, now)
                await task_store.save_task(failed)
                existing = await log_store.get_log(task.task_id) or ""
                chunk_count = await log_store.get_chunk_count(task.task_id)
                await log_store.save_log(
                    task.task_id,
                    existing + f"[SYSTEM] {PROCESS_RESTARTED_MESSAGE}\n",
                    chunk_count + 1,
                )
                recovered.append(failed)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    duration_ms = int((time.monotonic() - start_time) * 1000)
    log.warning(
        "interrupted_tasks_recovered",
        count=len(recovered),
        task_ids=[t.task_id for t in recovered],
        duration_ms=duration_ms,
    )
    return recovered
