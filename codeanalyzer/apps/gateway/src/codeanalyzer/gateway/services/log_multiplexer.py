"""LogMultiplexer -- 任务日志缓冲与扇出

每个 RUNNING 任务持有一个只追加的 LogBuffer：
- append 分配无间隙的 seq（从 0 开始），并通过 EventBus 同步发布 task:log
- subscribe 在同一同步步骤内完成历史重放与实时注册，迟到订阅者不重不漏
- close 之后缓冲不可变，返回落盘用的完整文本
已关闭的缓冲按 LRU 在内存中保留一段时间，供刚结束任务的重放使用。
"""

from collections import OrderedDict
from datetime import UTC, datetime

import structlog
from codeanalyzer.core.exceptions import LogBufferClosedError
from codeanalyzer.core.models import (
    EventType,
    LogChunk,
    LogStream,
    Task,
    TaskEvent,
    TaskLogPayload,
    render_log_text,
)
from ulid import ULID

from .event_bus import EventBus, EventFilter, Subscription

log = structlog.get_logger()


class LogBuffer:
    """单个任务的日志缓冲"""

    def __init__(self, task: Task) -> None:
        self.task_id = task.task_id
        self.domain_id = task.domain_id
        self.chunks: list[LogChunk] = []
        self.closed = False
        self._text: str | None = None

    @property
    def next_seq(self) -> int:
        return len(self.chunks)

    def text(self) -> str:
        if self._text is not None:
            return self._text
        text = render_log_text(self.chunks)
        if self.closed:
            self._text = text
        return text


class LogMultiplexer:
    """日志多路复用器"""

    def __init__(self, event_bus: EventBus, retain_closed: int = 100) -> None:
        self._bus = event_bus
        self._retain_closed = retain_closed
        self._buffers: OrderedDict[str, LogBuffer] = OrderedDict()

    def open(self, task: Task) -> LogBuffer:
        """为任务创建日志缓冲；已存在的打开缓冲直接返回"""
        buf = self._buffers.get(task.task_id)
        if buf is not None and not buf.closed:
            return buf
        buf = LogBuffer(task)
        self._buffers[task.task_id] = buf
        self._buffers.move_to_end(task.task_id)
        return buf

    def has_buffer(self, task_id: str) -> bool:
        return task_id in self._buffers

    def is_open(self, task_id: str) -> bool:
        buf = self._buffers.get(task_id)
        return buf is not None and not buf.closed

    def append(self, task: Task, stream: LogStream, data: str) -> LogChunk:
        """追加日志片段并发布 task:log

        Raises:
            LogBufferClosedError: 缓冲不存在或已关闭
        """
        buf = self._buffers.get(task.task_id)
        if buf is None or buf.closed:
            raise LogBufferClosedError(task.task_id)
        chunk = LogChunk(
            task_id=task.task_id,
            seq=buf.next_seq,
            stream=stream,
            data=data,
            ts=datetime.now(UTC),
        )
        buf.chunks.append(chunk)
        self._bus.publish(EventType.TASK_LOG, task, self._chunk_payload(chunk))
        return chunk

    def get_buffer(self, task_id: str, after_seq: int = -1) -> list[LogChunk]:
        """返回 seq > after_seq 的日志片段，未知任务返回空列表"""
        buf = self._buffers.get(task_id)
        if buf is None:
            return []
        return list(buf.chunks[max(after_seq + 1, 0):])

    def get_text(self, task_id: str) -> str | None:
        buf = self._buffers.get(task_id)
        if buf is None:
            return None
        return buf.text()

    def chunk_count(self, task_id: str) -> int:
        buf = self._buffers.get(task_id)
        return len(buf.chunks) if buf is not None else 0

    def subscribe(self, task: Task, after_seq: int = -1) -> Subscription:
        """订阅任务事件：先重放 after_seq 之后的日志，再接收实时事件

        订阅接收该任务的全部事件类型（日志、进度、终态）。
        """
        replay = [
            self._chunk_event(task, chunk)
            for chunk in self.get_buffer(task.task_id, after_seq)
        ]
        return self._bus.subscribe(EventFilter(task_id=task.task_id), replay=replay)

    def unsubscribe(self, sub: Subscription) -> None:
        self._bus.unsubscribe(sub)

    def close(self, task_id: str) -> str:
        """关闭缓冲，返回完整日志文本（重复关闭返回同一文本）"""
        buf = self._buffers.get(task_id)
        if buf is None:
            return ""
        if not buf.closed:
            buf.closed = True
            log.debug("log_buffer_closed", task_id=task_id, chunk_count=len(buf.chunks))
            self._evict_closed()
        return buf.text()

    def discard(self, task_id: str) -> None:
        """丢弃缓冲（任务被删除时调用）"""
        self._buffers.pop(task_id, None)

    def _evict_closed(self) -> None:
        """按 LRU 淘汰超出保留数量的已关闭缓冲"""
        closed_ids = [tid for tid, buf in self._buffers.items() if buf.closed]
        overflow = len(closed_ids) - self._retain_closed
        for tid in closed_ids[: max(overflow, 0)]:
            del self._buffers[tid]

    @staticmethod
    def _chunk_payload(chunk: LogChunk) -> dict:
        return TaskLogPayload(seq=chunk.seq, stream=chunk.stream, log=chunk.data).model_dump(
            mode="json"
        )

    def _chunk_event(self, task: Task, chunk: LogChunk) -> TaskEvent:
        return TaskEvent(
            event_id=str(ULID()),
            type=EventType.TASK_LOG,
            task_id=task.task_id,
            domain_id=task.domain_id,
            ts=chunk.ts,
            payload=self._chunk_payload(chunk),
        )
