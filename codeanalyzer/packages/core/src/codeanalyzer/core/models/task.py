"""Task Domain Model

内存中的 Task 是运行期的权威副本，进入终态并落盘后以持久化副本为准。
状态流转只由 TaskScheduler 驱动。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import TERMINAL_STATES, ErrorCode, TaskStatus, TaskType


class Task(BaseModel):
    """Task 数据模型

    concurrency_key 相同的两个任务不会同时处于 RUNNING。
    """

    task_id: str = Field(description="唯一标识，ULID 格式")
    type: TaskType = Field(description="任务类型")
    concurrency_key: str = Field(description="并发互斥键")
    domain_id: str | None = Field(default=None, description="所属 domain，全局任务为空")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="当前状态")
    created_at: datetime = Field(description="创建时间")
    started_at: datetime | None = Field(default=None, description="进入 RUNNING 的时间")
    finished_at: datetime | None = Field(default=None, description="进入终态的时间")
    agent: str = Field(description="执行 agent 标识")
    input_payload: dict[str, Any] = Field(default_factory=dict, description="任务参数")
    result: dict[str, Any] | None = Field(default=None, description="成功结果，仅 COMPLETED")
    error: str | None = Field(default=None, description="失败或取消原因")
    error_code: ErrorCode | None = Field(default=None, description="失败原因编码")
    retryable: bool = Field(default=False, description="失败是否可重试")
    log_handle: str = Field(default="", description="日志缓冲引用")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES
