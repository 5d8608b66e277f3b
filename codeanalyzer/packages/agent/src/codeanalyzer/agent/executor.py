"""AgentExecutor -- 启动 agent 并把执行过程暴露为 ExecutionHandle

ExecutionHandle 约定：
- on_chunk 回调按产生顺序收到日志片段，注册前产生的片段会暂存并在注册时补发
- on_done 回调恰好触发一次，done 之后不会再有日志片段
- cancel() 尽力而为，done 依旧触发一次（状态为 CANCELLED）
Executor 不修改 Task 记录，状态流转由调度器负责。
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from codeanalyzer.core.models import (
    ErrorCode,
    LogStream,
    Task,
    TaskStatus,
    TaskType,
    validate_input_payload,
)

from .base import ExecutionContext
from .exceptions import AgentError, AgentTimeoutError
from .registry import AgentRegistry

log = structlog.get_logger()

ChunkCallback = Callable[[LogStream, str], None]
ProgressCallback = Callable[[str, str], None]
DoneCallback = Callable[["ExecutionOutcome"], None]

_SEVERITIES = ("critical", "high", "medium", "low")


class ExecutionOutcome(BaseModel):
    """单次执行的最终结果"""

    status: TaskStatus = Field(description="COMPLETED / FAILED / CANCELLED")
    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    retryable: bool = False

    @classmethod
    def completed(cls, result: dict[str, Any]) -> "ExecutionOutcome":
        return cls(status=TaskStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error_code: ErrorCode, message: str, retryable: bool) -> "ExecutionOutcome":
        return cls(
            status=TaskStatus.FAILED,
            error=message,
            error_code=error_code,
            retryable=retryable,
        )

    @classmethod
    def cancelled(cls, reason: str = "Cancelled by user") -> "ExecutionOutcome":
        return cls(
            status=TaskStatus.CANCELLED,
            error=reason,
            error_code=ErrorCode.CANCELLED,
            retryable=False,
        )


class ExecutionHandle:
    """一次 agent 执行的句柄"""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self._chunk_callbacks: list[ChunkCallback] = []
        self._progress_callbacks: list[ProgressCallback] = []
        self._done_callbacks: list[DoneCallback] = []
        self._pending_chunks: list[tuple[LogStream, str]] = []
        self._pending_progress: list[tuple[str, str]] = []
        self._outcome: ExecutionOutcome | None = None
        self._runner: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def done(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> ExecutionOutcome | None:
        return self._outcome

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def on_chunk(self, callback: ChunkCallback) -> None:
        """注册日志回调，并补发注册前暂存的片段"""
        self._chunk_callbacks.append(callback)
        pending, self._pending_chunks = self._pending_chunks, []
        for stream, data in pending:
            self._invoke(callback, stream, data)

    def on_progress(self, callback: ProgressCallback) -> None:
        """注册进度回调，并补发注册前暂存的进度"""
        self._progress_callbacks.append(callback)
        pending, self._pending_progress = self._pending_progress, []
        for stage, message in pending:
            self._invoke(callback, stage, message)

    def on_done(self, callback: DoneCallback) -> None:
        """注册完成回调；已完成时立即触发"""
        if self._outcome is not None:
            self._invoke(callback, self._outcome)
            return
        self._done_callbacks.append(callback)

    def cancel(self) -> bool:
        """请求取消执行

        Returns:
            True 如果取消请求已发出，False 如果已经结束
        """
        if self._outcome is not None:
            return False
        self._cancel_requested = True
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        return True

    async def wait(self) -> ExecutionOutcome:
        """等待执行结束

        Raises:
            RuntimeError: 句柄未关联执行协程且尚未设置结果
        """
        if self._runner is not None:
            await asyncio.wait({self._runner})
        if self._outcome is None:
            raise RuntimeError(f"Execution {self.task_id} has no outcome")
        return self._outcome

    def emit_chunk(self, stream: LogStream, data: str) -> None:
        if self._outcome is not None:
            return
        if not self._chunk_callbacks:
            self._pending_chunks.append((stream, data))
            return
        for callback in list(self._chunk_callbacks):
            self._invoke(callback, stream, data)

    def emit_progress(self, stage: str, message: str) -> None:
        if self._outcome is not None:
            return
        if not self._progress_callbacks:
            self._pending_progress.append((stage, message))
            return
        for callback in list(self._progress_callbacks):
            self._invoke(callback, stage, message)

    def finish(self, outcome: ExecutionOutcome) -> None:
        """设置最终结果并触发 done 回调（仅第一次生效）"""
        if self._outcome is not None:
            return
        self._outcome = outcome
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            self._invoke(callback, outcome)

    def _on_runner_done(self, runner: asyncio.Task) -> None:
        """兜底：执行协程未能设置结果时（例如启动前即被取消）补发 done"""
        if self._outcome is not None:
            return
        if runner.cancelled():
            self.finish(ExecutionOutcome.cancelled())
        else:
            self.finish(
                ExecutionOutcome.failed(
                    ErrorCode.INTERNAL_ERROR,
                    "Agent run ended without an outcome",
                    retryable=False,
                )
            )

    def _invoke(self, callback: Callable, *args: Any) -> None:
        """调用回调，回调异常只记录日志，不影响执行"""
        try:
            callback(*args)
        except Exception as e:
            log.error(
                "execution_callback_failed",
                task_id=self.task_id,
                callback=getattr(callback, "__qualname__", repr(callback)),
                error=str(e),
                error_type=type(e).__name__,
            )


def enrich_result(task: Task, result: dict[str, Any]) -> dict[str, Any]:
    """补充任务元数据；bugs-security 结果自动计算严重级别汇总"""
    enriched = dict(result)
    enriched.setdefault("task_id", task.task_id)
    if "analyzed_at" not in enriched and "timestamp" not in enriched:
        enriched["analyzed_at"] = datetime.now(UTC).isoformat()

    findings = enriched.get("findings")
    if task.type == TaskType.BUGS_SECURITY and isinstance(findings, list):
        summary = {severity: 0 for severity in _SEVERITIES}
        for finding in findings:
            if not isinstance(finding, dict):
                continue
            severity = str(finding.get("severity", "")).lower()
            if severity in summary:
                summary[severity] += 1
        summary["total"] = len(findings)
        enriched["summary"] = summary
    return enriched


class AgentExecutor:
    """Agent 执行器"""

    def __init__(self, registry: AgentRegistry, timeout_s: float | None = None) -> None:
        """
        Args:
            registry: agent 注册表
            timeout_s: 单任务超时（秒），None 或 0 表示不限制
        """
        self._registry = registry
        self._timeout_s = timeout_s or None

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    def start(self, task: Task) -> ExecutionHandle:
        """启动任务执行

        校验在同步阶段完成，失败时不会启动任何执行。

        Raises:
            ValidationError: payload 不合法或 agent 未注册
        """
        validate_input_payload(task.type, task.input_payload)
        agent = self._registry.get(task.agent)

        handle = ExecutionHandle(task.task_id)
        ctx = ExecutionContext(task, handle.emit_chunk, handle.emit_progress)
        handle._runner = asyncio.get_running_loop().create_task(
            self._run(agent, task, ctx, handle),
            name=f"agent-{task.task_id}",
        )
        handle._runner.add_done_callback(handle._on_runner_done)
        return handle

    async def _run(self, agent, task: Task, ctx: ExecutionContext, handle: ExecutionHandle) -> None:
        """执行 agent 并把各种结束方式归一为 ExecutionOutcome

        只有本执行器设置的超时到期才记为 AgentTimeout，
        agent 内部自行抛出的 TimeoutError 按崩溃处理。
        """
        deadline = asyncio.timeout(self._timeout_s)
        try:
            async with deadline:
                result = await agent.run(task, ctx)
        except TimeoutError as e:
            if not deadline.expired():
                handle.finish(self._crashed(task, e))
                return
            err = AgentTimeoutError(self._timeout_s or 0)
            log.warning(
                "agent_timeout",
                task_id=task.task_id,
                agent=task.agent,
                timeout_s=self._timeout_s,
            )
            handle.finish(ExecutionOutcome.failed(err.code, err.message, err.retryable))
        except asyncio.CancelledError:
            log.info("agent_cancelled", task_id=task.task_id, agent=task.agent)
            handle.finish(ExecutionOutcome.cancelled())
            if not handle.cancel_requested:
                # 非主动取消（如事件循环关闭），继续向外传播
                raise
        except AgentError as e:
            log.warning(
                "agent_failed",
                task_id=task.task_id,
                agent=task.agent,
                error_code=e.code.value,
                retryable=e.retryable,
            )
            handle.finish(ExecutionOutcome.failed(e.code, e.message, e.retryable))
        except Exception as e:
            handle.finish(self._crashed(task, e))
        else:
            if not isinstance(result, dict):
                handle.finish(
                    ExecutionOutcome.failed(
                        ErrorCode.AGENT_PROTOCOL_ERROR,
                        "Agent returned a non-object result",
                        retryable=False,
                    )
                )
                return
            handle.finish(ExecutionOutcome.completed(enrich_result(task, result)))

    @staticmethod
    def _crashed(task: Task, e: Exception) -> ExecutionOutcome:
        log.error(
            "agent_crashed",
            task_id=task.task_id,
            agent=task.agent,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=e,
        )
        return ExecutionOutcome.failed(
            ErrorCode.INTERNAL_ERROR,
            f"Agent crashed unexpectedly ({type(e).__name__})",
            retryable=False,
        )
