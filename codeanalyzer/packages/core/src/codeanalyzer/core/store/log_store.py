"""LogStore SQLite 实现

任务进入终态时整份日志文本一次性写入，运行期间的日志只存在于内存缓冲。
"""

from datetime import UTC, datetime

import aiosqlite


class SqliteLogStore:
    """LogStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save_log(self, task_id: str, content: str, chunk_count: int = 0) -> None:
        """写入（覆盖）任务日志"""
        await self._conn.execute(
            """
            INSERT INTO task_logs (task_id, content, chunk_count, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                content = excluded.content,
                chunk_count = excluded.chunk_count,
                updated_at = excluded.updated_at
            """,
            (task_id, content, chunk_count, datetime.now(UTC).isoformat()),
        )

    async def get_log(self, task_id: str) -> str | None:
        """读取任务日志文本，不存在返回 None"""
        cursor = await self._conn.execute(
            "SELECT content FROM task_logs WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return row[0]

    async def get_chunk_count(self, task_id: str) -> int:
        """读取落盘时的日志片段数量"""
        cursor = await self._conn.execute(
            "SELECT chunk_count FROM task_logs WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row is not None else 0

    async def delete_log(self, task_id: str) -> None:
        """删除任务日志"""
        await self._conn.execute(
            "DELETE FROM task_logs WHERE task_id = ?",
            (task_id,),
        )
