"""TaskEvent -- 推送给订阅者的任务事件

event_id 使用 ULID 格式，时间有序。
同一任务的事件顺序：started -> (progress | log)* -> 终态事件。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import EventType


class TaskEvent(BaseModel):
    """任务事件"""

    event_id: str = Field(description="唯一标识，ULID 格式")
    type: EventType = Field(description="事件类型")
    task_id: str = Field(description="关联的 Task ID")
    domain_id: str | None = Field(default=None, description="关联的 domain")
    ts: datetime = Field(description="事件时间戳")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
