"""Store Protocol 接口定义 -- 任务持久化网关

定义 TaskStore、LogStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from collections.abc import Iterable
from typing import Protocol

from ..models.enums import TaskStatus
from ..models.task import Task


class TaskStore(Protocol):
    """Task 存储接口"""

    async def save_task(self, task: Task) -> None:
        """插入或覆盖任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def list_by_status(self, statuses: Iterable[TaskStatus]) -> list[Task]:
        """按状态查询任务，按 created_at 倒序"""
        ...

    async def delete_task(self, task_id: str) -> bool:
        """删除任务记录"""
        ...


class LogStore(Protocol):
    """任务日志存储接口"""

    async def save_log(self, task_id: str, content: str, chunk_count: int = 0) -> None:
        """写入（覆盖）任务日志"""
        ...

    async def get_log(self, task_id: str) -> str | None:
        """读取任务日志文本"""
        ...

    async def delete_log(self, task_id: str) -> None:
        """删除任务日志"""
        ...
