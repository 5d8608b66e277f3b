"""SSE 事件流路由

GET /api/stream/tasks/{task_id}: 推送指定任务的日志、进度与终态事件。
- 先重放 after_seq 之后的日志（query 参数优先，其次 Last-Event-ID），再推送实时事件
- task:log 事件的 SSE id 为日志 seq，断线重连时据此续传
- 终态事件携带 final: true，随后关闭连接
- 订阅积压溢出时推送 stream:truncated，客户端需重新拉取日志
GET /api/stream/events: 全局任务状态广播，可按 domain_id 过滤。
"""

import asyncio
import json

import structlog
from codeanalyzer.core.config import SSE_HEARTBEAT_INTERVAL
from codeanalyzer.core.exceptions import TaskError
from codeanalyzer.core.models import (
    TERMINAL_EVENT_TYPES,
    EventType,
    LogStream,
    Task,
    TaskEvent,
    TaskLogPayload,
)
from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse
from ulid import ULID

from ..deps import get_event_bus, get_log_multiplexer, get_scheduler
from ..errors import task_error_response
from ..services.event_bus import EventBus, EventFilter, Subscription
from ..services.scheduler import build_terminal_payload

log = structlog.get_logger()

router = APIRouter()

TRUNCATED_EVENT = "stream:truncated"

_TERMINAL_EVENTS = frozenset(TERMINAL_EVENT_TYPES.values())


def _sse_id(event: TaskEvent) -> str:
    if event.type == EventType.TASK_LOG and "seq" in event.payload:
        return str(event.payload["seq"])
    return event.event_id


def _event_to_sse(event: TaskEvent, is_final: bool = False) -> dict:
    """将 TaskEvent 转换为 SSE 消息"""
    data = event.model_dump(mode="json")
    data["final"] = is_final
    return {
        "id": _sse_id(event),
        "event": event.type.value,
        "data": json.dumps(data, ensure_ascii=False),
    }


def _truncated_message(task_id: str | None, sub: Subscription) -> dict:
    data = {"task_id": task_id, "dropped": sub.dropped_count}
    return {"event": TRUNCATED_EVENT, "data": json.dumps(data, ensure_ascii=False)}


def _resolve_after_seq(after_seq: int | None, last_event_id: str | None) -> int:
    """重放起点：显式 after_seq 优先；Last-Event-ID 只有是日志 seq 时才生效"""
    if after_seq is not None:
        return after_seq
    if last_event_id and last_event_id.strip().isdigit():
        return int(last_event_id.strip())
    return -1


def _synthesize_event(task: Task, event_type: EventType, payload: dict) -> TaskEvent:
    return TaskEvent(
        event_id=str(ULID()),
        type=event_type,
        task_id=task.task_id,
        domain_id=task.domain_id,
        ts=task.finished_at or task.created_at,
        payload=payload,
    )


async def _consume(sub: Subscription, task_id: str | None, stop_on_terminal: bool):
    """消费订阅队列，空闲时发送心跳"""
    while True:
        try:
            event = await asyncio.wait_for(sub.get(), timeout=SSE_HEARTBEAT_INTERVAL)
        except TimeoutError:
            yield {"comment": "heartbeat"}
            continue
        if event is None:
            if sub.truncated:
                yield _truncated_message(task_id, sub)
            return
        is_final = stop_on_terminal and event.type in _TERMINAL_EVENTS
        yield _event_to_sse(event, is_final=is_final)
        if is_final:
            return


@router.get("/api/stream/tasks/{task_id}")
async def stream_task_events(
    task_id: str,
    request: Request,
    after_seq: int | None = Query(default=None, ge=-1, description="重放起点 seq"),
    scheduler=Depends(get_scheduler),
    log_multiplexer=Depends(get_log_multiplexer),
):
    """任务事件 SSE 端点"""
    try:
        await scheduler.get_task(task_id)
    except TaskError as e:
        return task_error_response(e)

    start_seq = _resolve_after_seq(after_seq, request.headers.get("last-event-id"))

    async def event_generator():
        # 检查与订阅之间没有 await，活跃任务的重放与实时事件无缝衔接
        task = scheduler.get_active(task_id)
        if task is not None and not task.is_terminal:
            sub = log_multiplexer.subscribe(task, start_seq)
            try:
                async for message in _consume(sub, task_id, stop_on_terminal=True):
                    yield message
            finally:
                log_multiplexer.unsubscribe(sub)
            return

        # 已结束的任务：重放日志后补发终态事件
        task, content, chunk_count = await scheduler.get_logs(task_id)
        if not task.is_terminal:
            return
        if log_multiplexer.has_buffer(task_id):
            for chunk in log_multiplexer.get_buffer(task_id, start_seq):
                payload = TaskLogPayload(
                    seq=chunk.seq, stream=chunk.stream, log=chunk.data
                ).model_dump(mode="json")
                yield _event_to_sse(_synthesize_event(task, EventType.TASK_LOG, payload))
        elif content and start_seq < 0:
            # 持久化日志只有完整文本，无法按 seq 切分；客户端已收过任意片段时不再重发
            payload = TaskLogPayload(
                seq=chunk_count - 1, stream=LogStream.STDOUT, log=content
            ).model_dump(mode="json")
            yield _event_to_sse(_synthesize_event(task, EventType.TASK_LOG, payload))

        terminal = _synthesize_event(
            task,
            TERMINAL_EVENT_TYPES[task.status],
            build_terminal_payload(task, chunk_count),
        )
        yield _event_to_sse(terminal, is_final=True)

    return EventSourceResponse(event_generator())


@router.get("/api/stream/events")
async def stream_all_events(
    domain_id: str | None = Query(default=None, description="只接收该 domain 的事件"),
    include_logs: bool = Query(default=False, description="是否包含 task:log 事件"),
    event_bus: EventBus = Depends(get_event_bus),
):
    """全局任务事件广播"""
    types = None if include_logs else {t for t in EventType if t != EventType.TASK_LOG}

    async def event_generator():
        sub = event_bus.subscribe(EventFilter(domain_id=domain_id, types=types))
        log.debug("event_stream_opened", subscription_id=sub.subscription_id, domain_id=domain_id)
        try:
            async for message in _consume(sub, None, stop_on_terminal=False):
                yield message
        finally:
            event_bus.unsubscribe(sub)

    return EventSourceResponse(event_generator())
