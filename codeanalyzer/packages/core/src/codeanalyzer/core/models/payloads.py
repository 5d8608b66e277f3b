"""TaskEvent Payload 子类型

所有推送事件的结构化 payload 定义。
"""

from typing import Any

from pydantic import BaseModel, Field

from .enums import LogStream


class ProgressStage:
    """进度阶段常量"""

    INITIALIZING = "initializing"
    PROCESSING = "processing"
    COMPACTING = "compacting"
    COMPLETING = "completing"
    TOOL_EXECUTION = "tool-execution"
    ANALYZING = "analyzing"
    SAVING = "saving"


class TaskStartedPayload(BaseModel):
    """task:started 事件 payload"""

    type: str
    agent: str
    concurrency_key: str


class TaskProgressPayload(BaseModel):
    """task:progress 事件 payload"""

    type: str
    stage: str
    message: str = ""


class TaskLogPayload(BaseModel):
    """task:log 事件 payload"""

    seq: int
    stream: LogStream
    log: str


class TaskCompletedPayload(BaseModel):
    """task:completed 事件 payload"""

    type: str
    result: dict[str, Any] | None = None
    log_chunk_count: int = Field(default=0, description="日志片段总数")


class TaskFailedPayload(BaseModel):
    """task:failed / task:cancelled 事件 payload"""

    type: str
    status: str
    error: str
    error_code: str | None = None
    retryable: bool = False
    log_chunk_count: int = Field(default=0, description="日志片段总数")


def format_progress_line(stage: str, message: str) -> str:
    """进度消息同时写入日志时的行格式"""
    return f"[{stage.upper()}] {message}\n"
