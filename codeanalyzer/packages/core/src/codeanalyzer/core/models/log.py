"""LogChunk -- 任务日志片段

seq 在同一任务内从 0 开始严格递增且无间隙，用于断线重放。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import LogStream

# 落盘时 stderr 行的前缀
STDERR_PREFIX = "[STDERR] "


class LogChunk(BaseModel):
    """日志片段"""

    task_id: str
    seq: int = Field(ge=0, description="任务内序号")
    stream: LogStream = Field(default=LogStream.STDOUT)
    data: str = Field(description="原始输出文本")
    ts: datetime


def render_log_text(chunks: list[LogChunk]) -> str:
    """把日志片段拼接为落盘文本"""
    parts: list[str] = []
    for chunk in chunks:
        if chunk.stream == LogStream.STDERR:
            parts.append(f"{STDERR_PREFIX}{chunk.data}")
        else:
            parts.append(chunk.data)
    return "".join(parts)
