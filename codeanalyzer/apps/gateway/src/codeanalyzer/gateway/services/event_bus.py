"""EventBus -- 内存中任务事件发布/订阅

每个队列型订阅者持有一个有界 asyncio.Queue；回调型订阅者在发布时同步调用。
publish 同步执行且从不向发布方抛出异常。
队列溢出的订阅者被标记为 truncated 并摘除，消费完已入队事件后需重新拉取日志缓冲。
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
from codeanalyzer.core.models import EventType, Task, TaskEvent
from pydantic import BaseModel, Field
from ulid import ULID

log = structlog.get_logger()

EventHandler = Callable[[TaskEvent], None]

# 队列结束哨兵
_END = object()


class EventFilter(BaseModel):
    """订阅过滤条件，字段为空表示不过滤"""

    task_id: str | None = None
    domain_id: str | None = None
    types: set[EventType] | None = Field(default=None, description="关注的事件类型")

    def matches(self, event: TaskEvent) -> bool:
        if self.task_id is not None and event.task_id != self.task_id:
            return False
        if self.domain_id is not None and event.domain_id != self.domain_id:
            return False
        if self.types is not None and event.type not in self.types:
            return False
        return True


class Subscription:
    """单个订阅者

    队列型订阅通过 get() 消费；get() 返回 None 表示订阅已结束，
    此时 truncated=True 说明是因为积压溢出被摘除。
    """

    def __init__(
        self,
        event_filter: EventFilter,
        handler: EventHandler | None = None,
        queue_maxsize: int = 1000,
    ) -> None:
        self.subscription_id = str(ULID())
        self.filter = event_filter
        self.handler = handler
        self.truncated = False
        self.dropped_count = 0
        self._ended = False
        self._queue: asyncio.Queue | None = (
            asyncio.Queue(maxsize=queue_maxsize) if handler is None else None
        )

    @property
    def active(self) -> bool:
        return not self._ended

    def offer(self, event: TaskEvent) -> bool:
        """投递事件

        Returns:
            False 表示队列已满，订阅者应被截断
        """
        if self._ended:
            return True
        if self.handler is not None:
            self.handler(event)
            return True
        assert self._queue is not None
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_count += 1
            return False
        return True

    def end(self, truncated: bool = False) -> None:
        """结束订阅，唤醒等待中的消费者"""
        if self._ended:
            return
        self._ended = True
        self.truncated = self.truncated or truncated
        if self._queue is not None:
            try:
                self._queue.put_nowait(_END)
            except asyncio.QueueFull:
                # 队列满时消费者排空后会检查 _ended
                pass

    async def get(self) -> TaskEvent | None:
        """取下一条事件；订阅结束且已排空时返回 None"""
        if self._queue is None:
            raise RuntimeError("handler subscriptions cannot be consumed with get()")
        while True:
            if self._ended and self._queue.empty():
                return None
            item = await self._queue.get()
            if item is _END:
                continue
            return item

    def drain(self) -> list[TaskEvent]:
        """非阻塞取出当前已入队的全部事件"""
        items: list[TaskEvent] = []
        if self._queue is None:
            return items
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _END:
                items.append(item)
        return items


class EventBus:
    """任务事件总线"""

    def __init__(self, queue_maxsize: int = 1000) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._queue_maxsize = queue_maxsize

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(
        self,
        event_type: EventType,
        task: Task,
        payload: dict[str, Any] | None = None,
    ) -> TaskEvent | None:
        """构建并分发任务事件（fire-and-forget）

        Returns:
            分发的事件；构建失败时返回 None
        """
        try:
            event = TaskEvent(
                event_id=str(ULID()),
                type=event_type,
                task_id=task.task_id,
                domain_id=task.domain_id,
                ts=datetime.now(UTC),
                payload=payload or {},
            )
        except Exception as e:
            log.error(
                "event_build_failed",
                task_id=task.task_id,
                event_type=str(event_type),
                error_type=type(e).__name__,
            )
            return None
        self.dispatch(event)
        return event

    def dispatch(self, event: TaskEvent) -> None:
        """向所有匹配的订阅者分发事件，订阅者异常只记录日志"""
        for sub in list(self._subscriptions.values()):
            try:
                if not sub.filter.matches(event):
                    continue
                if not sub.offer(event):
                    self._truncate(sub)
            except Exception as e:
                log.error(
                    "event_handler_failed",
                    subscription_id=sub.subscription_id,
                    task_id=event.task_id,
                    event_type=event.type.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def subscribe(
        self,
        event_filter: EventFilter | None = None,
        handler: EventHandler | None = None,
        replay: Iterable[TaskEvent] = (),
    ) -> Subscription:
        """注册订阅

        replay 中的事件先于任何新发布的事件进入订阅队列，
        注册与预填在同一同步步骤内完成，不会丢失或重复。

        Args:
            event_filter: 过滤条件，None 表示接收全部事件
            handler: 回调型订阅；None 时创建队列型订阅
            replay: 注册前需要先投递的历史事件
        """
        sub = Subscription(
            event_filter or EventFilter(),
            handler=handler,
            queue_maxsize=self._queue_maxsize,
        )
        for event in replay:
            if not sub.offer(event):
                sub.end(truncated=True)
                log.warning(
                    "subscription_truncated_on_replay",
                    subscription_id=sub.subscription_id,
                    task_id=sub.filter.task_id,
                )
                return sub
        self._subscriptions[sub.subscription_id] = sub
        log.debug(
            "subscription_added",
            subscription_id=sub.subscription_id,
            task_id=sub.filter.task_id,
            domain_id=sub.filter.domain_id,
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """取消订阅（重复调用无副作用）"""
        self._subscriptions.pop(sub.subscription_id, None)
        sub.end()

    def _truncate(self, sub: Subscription) -> None:
        """积压溢出：摘除订阅者并标记 truncated"""
        self._subscriptions.pop(sub.subscription_id, None)
        sub.end(truncated=True)
        log.warning(
            "subscription_truncated",
            subscription_id=sub.subscription_id,
            task_id=sub.filter.task_id,
            dropped=sub.dropped_count,
        )
