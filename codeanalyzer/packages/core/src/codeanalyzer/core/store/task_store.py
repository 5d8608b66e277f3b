"""TaskStore SQLite 实现

save_task 为 upsert：始终写入调用方持有的最新快照。
此处仅提供数据库操作，事务提交由 transaction 模块负责。
"""

import json
from collections.abc import Iterable
from datetime import datetime

import aiosqlite

from ..models.enums import TaskStatus
from ..models.task import Task


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save_task(self, task: Task) -> None:
        """插入或覆盖任务记录"""
        await self._conn.execute(
            """
            INSERT INTO tasks (task_id, type, concurrency_key, domain_id, status,
                               created_at, started_at, finished_at, agent,
                               input_payload, result, error, error_code,
                               retryable, log_handle)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                status = excluded.status,
                started_at = excluded.started_at,
                finished_at = excluded.finished_at,
                result = excluded.result,
                error = excluded.error,
                error_code = excluded.error_code,
                retryable = excluded.retryable,
                log_handle = excluded.log_handle
            """,
            (
                task.task_id,
                task.type.value,
                task.concurrency_key,
                task.domain_id,
                task.status.value,
                task.created_at.isoformat(),
                task.started_at.isoformat() if task.started_at else None,
                task.finished_at.isoformat() if task.finished_at else None,
                task.agent,
                json.dumps(task.input_payload, ensure_ascii=False),
                json.dumps(task.result, ensure_ascii=False)
                if task.result is not None
                else None,
                task.error,
                task.error_code.value if task.error_code else None,
                1 if task.retryable else 0,
                task.log_handle,
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_by_status(self, statuses: Iterable[TaskStatus]) -> list[Task]:
        """按状态查询任务，按 created_at 倒序"""
        values = [TaskStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        cursor = await self._conn.execute(
            f"SELECT * FROM tasks WHERE status IN ({placeholders}) "
            "ORDER BY created_at DESC",
            values,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks(self) -> list[Task]:
        """查询全部任务，按 created_at 倒序"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks ORDER BY created_at DESC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def delete_task(self, task_id: str) -> bool:
        """删除任务记录，返回是否存在"""
        cursor = await self._conn.execute(
            "DELETE FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row[0],
            type=row[1],
            concurrency_key=row[2],
            domain_id=row[3],
            status=row[4],
            created_at=datetime.fromisoformat(row[5]),
            started_at=datetime.fromisoformat(row[6]) if row[6] else None,
            finished_at=datetime.fromisoformat(row[7]) if row[7] else None,
            agent=row[8],
            input_payload=json.loads(row[9]),
            result=json.loads(row[10]) if row[10] is not None else None,
            error=row[11],
            error_code=row[12],
            retryable=bool(row[13]),
            log_handle=row[14],
        )
