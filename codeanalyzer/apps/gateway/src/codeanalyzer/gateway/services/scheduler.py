"""TaskScheduler -- 任务准入、执行调度与终态收尾

流程：
1. submit 校验参数并生成 PENDING 任务
2. admit 在 concurrency key 表上做原子 check-and-set（同步执行，中间没有 await）
3. 有空闲槽位时 PENDING -> RUNNING，打开日志缓冲，发布 task:started，启动 executor
4. executor 日志片段进入 LogMultiplexer，进度发布 task:progress 并写入一行日志
5. executor 结束：终态流转 -> 释放 key -> 关闭日志缓冲 -> 发布终态事件 -> 异步落盘

同一 key 不排队：key 被占用时直接拒绝（AlreadyInProgressError）。
全局并发上限已满时，任务保留 key 并以 PENDING 状态按 FIFO 等待槽位。
"""

import asyncio
from collections import deque
from datetime import UTC, datetime
from functools import partial

import aiosqlite
import structlog
from codeanalyzer.agent import AgentExecutor, ExecutionHandle, ExecutionOutcome
from codeanalyzer.core.config import ERROR_MESSAGE_MAX_LENGTH
from codeanalyzer.core.exceptions import (
    AlreadyInProgressError,
    InvalidTransitionError,
    LogBufferClosedError,
    TaskConflictError,
    TaskError,
    TaskNotFoundError,
)
from codeanalyzer.core.models import (
    ACTIVE_STATES,
    TERMINAL_EVENT_TYPES,
    ErrorCode,
    EventType,
    LogStream,
    Task,
    TaskCompletedPayload,
    TaskFailedPayload,
    TaskProgressPayload,
    TaskStartedPayload,
    TaskStatus,
    TaskType,
    derive_concurrency_key,
    format_progress_line,
    parse_task_type,
    validate_domain_scope,
    validate_input_payload,
    validate_transition,
)
from codeanalyzer.core.recovery import recover_interrupted_tasks
from codeanalyzer.core.store import StoreGroup
from codeanalyzer.core.store.transaction import (
    delete_task_with_log,
    finalize_task,
    save_task,
)
from ulid import ULID

from .event_bus import EventBus
from .log_multiplexer import LogMultiplexer

log = structlog.get_logger()


def format_task_error(error_code: ErrorCode | None, message: str, retryable: bool) -> str:
    """生成写入 Task.error 的可读错误信息"""
    hint = "retryable" if retryable else "not retryable"
    prefix = f"{error_code.value}: " if error_code else ""
    text = f"{prefix}{message} ({hint})"
    return text[:ERROR_MESSAGE_MAX_LENGTH]


def build_terminal_payload(task: Task, chunk_count: int) -> dict:
    """终态事件 payload（COMPLETED 与 FAILED/CANCELLED 结构不同）"""
    if task.status == TaskStatus.COMPLETED:
        return TaskCompletedPayload(
            type=task.type.value,
            result=task.result,
            log_chunk_count=chunk_count,
        ).model_dump()
    return TaskFailedPayload(
        type=task.type.value,
        status=task.status.value,
        error=task.error or "",
        error_code=task.error_code.value if task.error_code else None,
        retryable=task.retryable,
        log_chunk_count=chunk_count,
    ).model_dump()


class TaskScheduler:
    """任务调度器

    运行期内存中的 Task 是权威副本；终态落盘完成后以持久化副本为准。
    """

    _max_flush_attempts = 3
    _flush_retry_delay_s = 0.2

    def __init__(
        self,
        store_group: StoreGroup,
        executor: AgentExecutor,
        event_bus: EventBus,
        log_multiplexer: LogMultiplexer,
        max_concurrent_tasks: int = 0,
    ) -> None:
        self._stores = store_group
        self._executor = executor
        self._bus = event_bus
        self._logs = log_multiplexer
        self._max_concurrent = max(0, max_concurrent_tasks)

        # task_id -> 内存工作副本（活跃任务 + 尚未落盘的终态任务）
        self._tasks: dict[str, Task] = {}
        # concurrency_key -> 持有该 key 的 task_id
        self._keys: dict[str, str] = {}
        self._handles: dict[str, ExecutionHandle] = {}
        self._running: set[str] = set()
        self._waiting: deque[str] = deque()
        self._task_locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    # ---- 查询 ----

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def key_holder(self, concurrency_key: str) -> str | None:
        """返回当前持有 key 的 task_id"""
        return self._keys.get(concurrency_key)

    def get_active(self, task_id: str) -> Task | None:
        """同步读取内存中的任务（活跃任务或尚未落盘的终态任务）"""
        return self._tasks.get(task_id)

    def list_pending(self) -> list[Task]:
        """PENDING + RUNNING 任务，按 created_at 倒序"""
        active = [t for t in self._tasks.values() if t.status in ACTIVE_STATES]
        return sorted(active, key=lambda t: t.created_at, reverse=True)

    async def get_task(self, task_id: str) -> Task:
        """查询任务（内存优先）

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self._tasks.get(task_id)
        if task is not None:
            return task
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_logs(self, task_id: str) -> tuple[Task, str, int]:
        """读取任务日志：运行中或刚结束的任务读内存缓冲，其余读持久化

        Returns:
            (task, 日志文本, 片段数量)；尚无日志时文本为空串
        """
        task = await self.get_task(task_id)
        text = self._logs.get_text(task_id)
        if text is not None:
            return task, text, self._logs.chunk_count(task_id)
        stored = await self._stores.log_store.get_log(task_id)
        if stored is None:
            return task, "", 0
        count = await self._stores.log_store.get_chunk_count(task_id)
        return task, stored, count

    # ---- 提交与准入 ----

    async def submit(
        self,
        task_type: TaskType | str,
        input_payload: dict | None = None,
        domain_id: str | None = None,
        agent: str | None = None,
        concurrency_key: str | None = None,
    ) -> Task:
        """提交任务

        Returns:
            提交时刻的 PENDING 快照

        Raises:
            ValidationError: 参数不合法（不会创建任务）
            AlreadyInProgressError: 同 key 已有任务在运行
        """
        task_type = parse_task_type(task_type) if isinstance(task_type, str) else task_type
        validate_domain_scope(task_type, domain_id)
        validate_input_payload(task_type, input_payload)
        agent_id = agent or self._executor.registry.default_agent
        self._executor.registry.get(agent_id)

        task_id = str(ULID())
        task = Task(
            task_id=task_id,
            type=task_type,
            concurrency_key=concurrency_key or derive_concurrency_key(task_type, domain_id),
            domain_id=domain_id if not task_type.is_global else None,
            status=TaskStatus.PENDING,
            created_at=datetime.now(UTC),
            agent=agent_id,
            input_payload=dict(input_payload or {}),
            log_handle=f"logs/{task_id}",
        )
        snapshot = task.model_copy()

        self.admit(task)
        log.info(
            "task_submitted",
            task_id=task_id,
            type=task_type.value,
            concurrency_key=task.concurrency_key,
            agent=agent_id,
        )
        await self._persist(task_id)
        return snapshot

    def admit(self, task: Task) -> None:
        """原子准入：key 空闲则占用并调度，否则拒绝且不改变任何状态

        Raises:
            AlreadyInProgressError: key 已被占用
        """
        holder = self._keys.get(task.concurrency_key)
        if holder is not None:
            log.info(
                "task_rejected_already_in_progress",
                concurrency_key=task.concurrency_key,
                existing_task_id=holder,
            )
            raise AlreadyInProgressError(task.concurrency_key, holder)
        self._keys[task.concurrency_key] = task.task_id
        self._tasks[task.task_id] = task

        if self._has_free_slot():
            self._dispatch(task.task_id)
        else:
            self._waiting.append(task.task_id)
            log.info(
                "task_waiting_for_slot",
                task_id=task.task_id,
                running=len(self._running),
                max_concurrent=self._max_concurrent,
            )

    def _has_free_slot(self) -> bool:
        return self._max_concurrent == 0 or len(self._running) < self._max_concurrent

    def _dispatch(self, task_id: str) -> None:
        """PENDING -> RUNNING 并启动 executor（同步）"""
        task = self._transition(
            task_id,
            TaskStatus.RUNNING,
            started_at=datetime.now(UTC),
        )
        self._running.add(task_id)
        self._logs.open(task)
        self._bus.publish(
            EventType.TASK_STARTED,
            task,
            TaskStartedPayload(
                type=task.type.value,
                agent=task.agent,
                concurrency_key=task.concurrency_key,
            ).model_dump(),
        )
        log.info("task_started", task_id=task_id, agent=task.agent)

        try:
            handle = self._executor.start(task)
        except TaskError as e:
            self._finalize(
                task_id,
                ExecutionOutcome.failed(ErrorCode.VALIDATION_ERROR, e.message, False),
            )
            return
        except Exception as e:
            log.error(
                "executor_start_failed",
                task_id=task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._finalize(
                task_id,
                ExecutionOutcome.failed(
                    ErrorCode.INTERNAL_ERROR,
                    f"Agent failed to start ({type(e).__name__})",
                    False,
                ),
            )
            return

        self._handles[task_id] = handle
        handle.on_chunk(partial(self.on_executor_chunk, task_id))
        handle.on_progress(partial(self.on_executor_progress, task_id))
        handle.on_done(partial(self.on_executor_done, task_id))

    def _dispatch_waiting(self) -> None:
        """槽位释放后按 FIFO 启动等待中的任务"""
        while self._waiting and self._has_free_slot():
            task_id = self._waiting.popleft()
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                continue
            self._dispatch(task_id)
            self._spawn(self._persist(task_id))

    # ---- executor 回调 ----

    def on_executor_chunk(self, task_id: str, stream: LogStream, data: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return
        try:
            self._logs.append(task, stream, data)
        except LogBufferClosedError:
            log.warning("log_append_after_close", task_id=task_id)
        except Exception as e:
            self._fail_running(task_id, e)

    def on_executor_progress(self, task_id: str, stage: str, message: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return
        self._bus.publish(
            EventType.TASK_PROGRESS,
            task,
            TaskProgressPayload(type=task.type.value, stage=stage, message=message).model_dump(),
        )
        self.on_executor_chunk(task_id, LogStream.STDOUT, format_progress_line(stage, message))

    def on_executor_done(self, task_id: str, outcome: ExecutionOutcome) -> None:
        """executor 结束回调（每个任务只生效一次）"""
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal:
            return
        self._finalize(task_id, outcome)

    def _fail_running(self, task_id: str, error: Exception) -> None:
        """日志管道内部错误：立即以 FAILED 收尾并取消执行"""
        log.error(
            "task_pipeline_failed",
            task_id=task_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        handle = self._handles.get(task_id)
        self._finalize(
            task_id,
            ExecutionOutcome.failed(
                ErrorCode.INTERNAL_ERROR,
                f"Log pipeline failed ({type(error).__name__})",
                False,
            ),
        )
        if handle is not None:
            handle.cancel()

    # ---- 终态收尾 ----

    def _finalize(self, task_id: str, outcome: ExecutionOutcome) -> None:
        """终态流转 -> 释放 key -> 关闭日志 -> 发布终态事件 -> 调度落盘"""
        updates: dict = {"finished_at": datetime.now(UTC)}
        if outcome.status == TaskStatus.COMPLETED:
            updates["result"] = outcome.result or {}
        else:
            updates["error_code"] = outcome.error_code
            updates["retryable"] = outcome.retryable
            if outcome.status == TaskStatus.FAILED:
                updates["error"] = format_task_error(
                    outcome.error_code, outcome.error or "Task failed", outcome.retryable
                )
            else:
                updates["error"] = outcome.error or "Cancelled"

        task = self._transition(task_id, outcome.status, **updates)
        self._handles.pop(task_id, None)
        self._running.discard(task_id)
        self._release_key(task)

        log_text = self._logs.close(task_id)
        chunk_count = self._logs.chunk_count(task_id)

        self._bus.publish(
            TERMINAL_EVENT_TYPES[task.status],
            task,
            build_terminal_payload(task, chunk_count),
        )

        log.info(
            "task_finished",
            task_id=task_id,
            status=task.status.value,
            error_code=task.error_code.value if task.error_code else None,
            log_chunk_count=chunk_count,
        )
        self._spawn(self._persist(task_id, log_text=log_text, chunk_count=chunk_count))
        self._dispatch_waiting()

    def _transition(self, task_id: str, to_status: TaskStatus, **updates) -> Task:
        """校验并应用状态流转（内存中操作）

        Raises:
            InvalidTransitionError: 非法流转
        """
        task = self._tasks[task_id]
        if not validate_transition(task.status, to_status):
            raise InvalidTransitionError(task_id, task.status.value, to_status.value)
        task = task.model_copy(update={"status": to_status, **updates})
        self._tasks[task_id] = task
        return task

    def _release_key(self, task: Task) -> None:
        if self._keys.get(task.concurrency_key) == task.task_id:
            del self._keys[task.concurrency_key]

    # ---- 取消与删除 ----

    async def cancel(self, task_id: str) -> Task:
        """取消任务

        RUNNING 任务请求 executor 取消，终态由 executor 结束回调写入；
        等待槽位的 PENDING 任务直接进入 CANCELLED；终态任务不做任何操作。

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self._tasks.get(task_id)
        if task is None:
            return await self.get_task(task_id)
        if task.is_terminal:
            return task

        if task.status == TaskStatus.PENDING:
            self._remove_waiting(task_id)
            self._finalize(task_id, ExecutionOutcome.cancelled())
            return self._tasks[task_id]

        handle = self._handles.get(task_id)
        if handle is not None:
            handle.cancel()
            log.info("task_cancel_requested", task_id=task_id)
        return task

    async def delete_task(self, task_id: str) -> None:
        """删除任务记录与日志

        Raises:
            TaskConflictError: 任务正在运行
            TaskNotFoundError: 任务不存在
        """
        task = self._tasks.get(task_id)
        if task is not None and task.status == TaskStatus.RUNNING:
            raise TaskConflictError(
                task_id, "Task is running; cancel it before deleting"
            )
        if task is not None and task.status == TaskStatus.PENDING:
            self._remove_waiting(task_id)
            self._finalize(task_id, ExecutionOutcome.cancelled("Deleted before start"))

        lock = self._get_task_lock(task_id)
        async with lock:
            in_memory = self._tasks.pop(task_id, None) is not None
            existed = await delete_task_with_log(
                self._stores.conn,
                self._stores.task_store,
                self._stores.log_store,
                task_id,
            )
        self._cleanup_task_lock(task_id)
        self._logs.discard(task_id)
        if not existed and not in_memory:
            raise TaskNotFoundError(task_id)
        log.info("task_deleted", task_id=task_id)

    def _remove_waiting(self, task_id: str) -> None:
        try:
            self._waiting.remove(task_id)
        except ValueError:
            pass

    # ---- 持久化 ----

    async def _persist(
        self,
        task_id: str,
        log_text: str | None = None,
        chunk_count: int = 0,
    ) -> None:
        """写入当前内存快照；传入 log_text 时与日志同事务落盘

        同一任务的写入由 task 级别锁串行化，且始终写最新快照，
        因此迟到的写入不会把终态记录覆盖回旧状态。
        落盘失败时重试，最终失败只记录日志，内存中的终态保持不变。
        """
        lock = self._get_task_lock(task_id)
        async with lock:
            for attempt in range(1, self._max_flush_attempts + 1):
                task = self._tasks.get(task_id)
                if task is None:
                    # 已删除或已被之前的终态落盘移出内存
                    return
                try:
                    if log_text is None:
                        await save_task(self._stores.conn, self._stores.task_store, task)
                    else:
                        await finalize_task(
                            self._stores.conn,
                            self._stores.task_store,
                            self._stores.log_store,
                            task,
                            log_text,
                            chunk_count,
                        )
                    break
                except (aiosqlite.Error, OSError, ValueError) as e:
                    if attempt < self._max_flush_attempts:
                        log.warning(
                            "task_persist_retry",
                            task_id=task_id,
                            attempt=attempt,
                            error_type=type(e).__name__,
                        )
                        await asyncio.sleep(self._flush_retry_delay_s * attempt)
                        continue
                    log.error(
                        "task_persist_failed",
                        task_id=task_id,
                        status=task.status.value,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    return

            if log_text is not None and task.is_terminal:
                # 终态已落盘，之后以持久化副本为准
                self._tasks.pop(task_id, None)
        self._cleanup_task_lock(task_id)

    def _get_task_lock(self, task_id: str) -> asyncio.Lock:
        """获取 task 级别锁，序列化同一任务的持久化写入"""
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._task_locks[task_id] = lock
        return lock

    def _cleanup_task_lock(self, task_id: str) -> None:
        """任务已离开内存且锁空闲时清理锁"""
        lock = self._task_locks.get(task_id)
        if lock is not None and not lock.locked() and task_id not in self._tasks:
            del self._task_locks[task_id]

    def _spawn(self, coro) -> asyncio.Task:
        """启动后台协程并持有引用直到结束"""
        bg = asyncio.get_running_loop().create_task(coro)
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)
        return bg

    # ---- 生命周期 ----

    async def recover(self) -> list[Task]:
        """启动恢复：中断的任务标记为 FAILED（ProcessRestarted）"""
        return await recover_interrupted_tasks(
            self._stores.conn,
            self._stores.task_store,
            self._stores.log_store,
        )

    async def wait_for_task(self, task_id: str) -> Task:
        """等待任务执行结束且落盘完成，返回最终记录"""
        handle = self._handles.get(task_id)
        if handle is not None:
            await handle.wait()
        await self.flush()
        return await self.get_task(task_id)

    async def flush(self) -> None:
        """等待所有后台落盘完成"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """取消所有运行中的任务并等待落盘"""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for task_id in list(self._waiting):
            self._remove_waiting(task_id)
            if task_id in self._tasks and not self._tasks[task_id].is_terminal:
                self._finalize(task_id, ExecutionOutcome.cancelled("Server shutting down"))
        if handles:
            await asyncio.wait(
                [asyncio.ensure_future(h.wait()) for h in handles],
                timeout=timeout_s,
            )
        await self.flush()
        log.info("scheduler_shutdown", cancelled=len(handles))
