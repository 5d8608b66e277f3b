"""TaskScheduler 测试

测试内容：
1. 同 key 重复提交被拒绝（AlreadyInProgress + existing_task_id）
2. 成功执行：日志按序、终态事件携带结果
3. executor 启动即抛错或 agent 超时：FAILED 且 key 释放
4. 重启恢复：RUNNING -> FAILED（ProcessRestarted），key 空闲
5. 取消运行中任务：CANCELLED 且 key 释放
6. 全局并发上限、等待队列与删除语义
7. 并发提交下的准入原子性与事件顺序
"""

import asyncio
from datetime import UTC, datetime

import aiosqlite
import pytest
from codeanalyzer.agent import AgentExecutor
from codeanalyzer.core.exceptions import (
    AlreadyInProgressError,
    TaskConflictError,
    TaskNotFoundError,
    ValidationError,
)
from codeanalyzer.core.models import (
    ErrorCode,
    EventType,
    Task,
    TaskEvent,
    TaskStatus,
    TaskType,
)
from codeanalyzer.core.store.transaction import save_task
from codeanalyzer.gateway.services import scheduler as scheduler_module
from codeanalyzer.gateway.services.scheduler import format_task_error

DOC_PAYLOAD = {"files": ["src/auth/login.py"]}


class ExplodingExecutor(AgentExecutor):
    """start() 同步抛出非预期异常"""

    def start(self, task):
        raise RuntimeError("agent binary crashed on launch")


def _collect(event_bus) -> list[TaskEvent]:
    events: list[TaskEvent] = []
    event_bus.subscribe(handler=events.append)
    return events


class TestAdmission:
    async def test_same_key_rejected(self, scheduler, registry, scripted_agent_cls):
        """第二个同 key 任务被拒绝，不排队"""
        agent = scripted_agent_cls(block=True)
        registry.register(agent)

        t1 = await scheduler.submit(
            "documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted"
        )
        with pytest.raises(AlreadyInProgressError) as exc_info:
            await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")

        assert t1.concurrency_key == "d1:documentation"
        assert exc_info.value.existing_task_id == t1.task_id
        assert (await scheduler.get_task(t1.task_id)).status in (
            TaskStatus.PENDING,
            TaskStatus.RUNNING,
        )
        assert [t.task_id for t in scheduler.list_pending()] == [t1.task_id]
        agent.release.set()

    async def test_different_keys_run_concurrently(
        self, scheduler, registry, scripted_agent_cls
    ):
        agent = scripted_agent_cls(block=True)
        registry.register(agent)
        a = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        b = await scheduler.submit("testing", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        c = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d2", agent="scripted")

        assert scheduler.running_count == 3
        assert {a.concurrency_key, b.concurrency_key, c.concurrency_key} == {
            "d1:documentation",
            "d1:testing",
            "d2:documentation",
        }
        agent.release.set()

    async def test_validation_failure_creates_nothing(self, scheduler, store_group):
        with pytest.raises(ValidationError):
            await scheduler.submit("documentation", {"files": []}, domain_id="d1")
        with pytest.raises(ValidationError):
            await scheduler.submit("documentation", DOC_PAYLOAD)
        with pytest.raises(ValidationError):
            await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="ghost")

        assert scheduler.list_pending() == []
        assert scheduler.key_holder("d1:documentation") is None
        assert await store_group.task_store.list_tasks() == []

    async def test_concurrent_submits_admit_exactly_one(
        self, scheduler, registry, scripted_agent_cls
    ):
        agent = scripted_agent_cls(block=True)
        registry.register(agent)

        results = await asyncio.gather(
            *(
                scheduler.submit("codebase-analysis", {}, agent="scripted")
                for _ in range(10)
            ),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, Task)]
        rejected = [r for r in results if isinstance(r, AlreadyInProgressError)]
        assert len(accepted) == 1
        assert len(rejected) == 9
        assert all(r.existing_task_id == accepted[0].task_id for r in rejected)
        agent.release.set()


class TestExecution:
    async def test_success_flow(self, scheduler, registry, event_bus, log_multiplexer, scripted_agent_cls):
        """日志按序进入缓冲，task:completed 携带结果"""
        registry.register(
            scripted_agent_cls(
                lines=["building context\n", "calling model\n"],
                result={"summary": "ok"},
            )
        )
        events = _collect(event_bus)

        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        final = await scheduler.wait_for_task(task.task_id)

        assert final.status == TaskStatus.COMPLETED
        assert final.result["summary"] == "ok"
        assert final.started_at is not None and final.finished_at is not None
        assert [c.data for c in log_multiplexer.get_buffer(task.task_id)] == [
            "building context\n",
            "calling model\n",
        ]
        completed = [e for e in events if e.type == EventType.TASK_COMPLETED]
        assert len(completed) == 1
        assert completed[0].payload["result"]["summary"] == "ok"
        assert completed[0].payload["log_chunk_count"] == 2
        assert scheduler.key_holder("d1:documentation") is None

    async def test_event_order_per_task(self, scheduler, event_bus):
        events = _collect(event_bus)
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)

        types = [e.type for e in events if e.task_id == task.task_id]
        assert types[0] == EventType.TASK_STARTED
        assert types[-1] == EventType.TASK_COMPLETED
        assert set(types[1:-1]) <= {EventType.TASK_LOG, EventType.TASK_PROGRESS}
        seqs = [e.payload["seq"] for e in events if e.type == EventType.TASK_LOG]
        assert seqs == list(range(len(seqs)))

    async def test_progress_is_logged(self, scheduler, log_multiplexer):
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)
        text = log_multiplexer.get_text(task.task_id)
        assert "[INITIALIZING] Starting echo run for documentation\n" in text

    async def test_start_failure_releases_key(self, make_scheduler, registry):
        """executor.start 同步抛错：FAILED，key 释放，后续同 key 可准入"""
        sched = make_scheduler(executor=ExplodingExecutor(registry))
        t1 = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await sched.flush()

        failed = await sched.get_task(t1.task_id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error
        assert failed.error_code == ErrorCode.INTERNAL_ERROR
        assert sched.key_holder("d1:documentation") is None

        t2 = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        assert t2.task_id != t1.task_id

    async def test_timeout_fails_and_releases_key(
        self, make_scheduler, registry, event_bus, scripted_agent_cls
    ):
        """agent 超时：FAILED AgentTimeout（可重试），广播 task:failed，key 释放"""
        registry.register(scripted_agent_cls(block=True))
        sched = make_scheduler(executor=AgentExecutor(registry, timeout_s=0.05))
        events = _collect(event_bus)

        t1 = await sched.submit(
            "documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted"
        )
        final = await sched.wait_for_task(t1.task_id)

        assert final.status == TaskStatus.FAILED
        assert final.error_code == ErrorCode.AGENT_TIMEOUT
        assert final.retryable is True
        assert final.error.endswith("(retryable)")
        failed_events = [
            e for e in events if e.type == EventType.TASK_FAILED and e.task_id == t1.task_id
        ]
        assert len(failed_events) == 1
        assert failed_events[0].payload["error_code"] == "AgentTimeout"
        assert sched.key_holder("d1:documentation") is None

        t2 = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        assert t2.task_id != t1.task_id
        assert (await sched.wait_for_task(t2.task_id)).status == TaskStatus.COMPLETED

    async def test_agent_failure_is_retry_hinted(self, scheduler):
        task = await scheduler.submit(
            "documentation",
            {"files": ["a.py"], "user_context": "echo:fail"},
            domain_id="d1",
        )
        final = await scheduler.wait_for_task(task.task_id)
        assert final.status == TaskStatus.FAILED
        assert final.error_code == ErrorCode.AGENT_PROTOCOL_ERROR
        assert final.retryable is False
        assert final.error.endswith("(not retryable)")

    async def test_persisted_with_log(self, scheduler, store_group):
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)

        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.COMPLETED
        log_text = await store_group.log_store.get_log(task.task_id)
        assert "[echo] line 3/3\n" in log_text

    async def test_get_logs_falls_back_to_store(self, scheduler, log_multiplexer):
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)
        in_memory = await scheduler.get_logs(task.task_id)

        log_multiplexer.discard(task.task_id)
        _, stored_text, stored_count = await scheduler.get_logs(task.task_id)

        assert stored_text == in_memory[1]
        assert stored_count == in_memory[2]

    async def test_persist_failure_keeps_terminal_state(
        self, scheduler, monkeypatch
    ):
        """落盘失败：状态不回退，key 依旧释放"""

        async def broken_finalize(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(scheduler_module, "finalize_task", broken_finalize)
        monkeypatch.setattr(scheduler, "_flush_retry_delay_s", 0)

        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        final = await scheduler.wait_for_task(task.task_id)

        assert final.status == TaskStatus.COMPLETED
        assert scheduler.key_holder("d1:documentation") is None


class TestCancel:
    async def test_cancel_running(self, scheduler, registry, event_bus, scripted_agent_cls):
        """取消运行中任务：executor 收到取消，终态 CANCELLED，key 释放"""
        agent = scripted_agent_cls(block=True)
        registry.register(agent)
        events = _collect(event_bus)

        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        await agent.started.wait()
        handle = scheduler._handles[task.task_id]

        returned = await scheduler.cancel(task.task_id)
        final = await scheduler.wait_for_task(task.task_id)

        assert returned.status == TaskStatus.RUNNING
        assert handle.cancel_requested is True
        assert final.status == TaskStatus.CANCELLED
        assert final.error_code == ErrorCode.CANCELLED
        assert scheduler.key_holder("d1:documentation") is None
        assert [e.type for e in events][-1] == EventType.TASK_CANCELLED

    async def test_cancel_terminal_is_noop(self, scheduler):
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)

        result = await scheduler.cancel(task.task_id)
        assert result.status == TaskStatus.COMPLETED

    async def test_cancel_unknown(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await scheduler.cancel("01UNKNOWN")


class TestConcurrencyCap:
    async def test_waiting_task_keeps_key(
        self, make_scheduler, registry, scripted_agent_cls
    ):
        agent = scripted_agent_cls(block=True)
        registry.register(agent)
        sched = make_scheduler(max_concurrent_tasks=1)

        first = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        second = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d2", agent="scripted")

        assert sched.running_count == 1
        assert sched.waiting_count == 1
        assert (await sched.get_task(second.task_id)).status == TaskStatus.PENDING
        with pytest.raises(AlreadyInProgressError):
            await sched.submit("documentation", DOC_PAYLOAD, domain_id="d2")

        agent.release.set()
        await sched.wait_for_task(first.task_id)
        final = await sched.wait_for_task(second.task_id)
        assert final.status == TaskStatus.COMPLETED
        assert sched.waiting_count == 0

    async def test_cancel_waiting_task(
        self, make_scheduler, registry, event_bus, scripted_agent_cls
    ):
        agent = scripted_agent_cls(block=True)
        registry.register(agent)
        sched = make_scheduler(max_concurrent_tasks=1)
        events = _collect(event_bus)

        await sched.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")
        waiting = await sched.submit("documentation", DOC_PAYLOAD, domain_id="d2", agent="scripted")

        cancelled = await sched.cancel(waiting.task_id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert sched.waiting_count == 0
        assert sched.key_holder("d2:documentation") is None
        assert any(
            e.type == EventType.TASK_CANCELLED and e.task_id == waiting.task_id for e in events
        )
        agent.release.set()


class TestDelete:
    async def test_delete_running_conflicts(self, scheduler, registry, scripted_agent_cls):
        agent = scripted_agent_cls(block=True)
        registry.register(agent)
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1", agent="scripted")

        with pytest.raises(TaskConflictError):
            await scheduler.delete_task(task.task_id)
        agent.release.set()

    async def test_delete_finished(self, scheduler, store_group):
        task = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        await scheduler.wait_for_task(task.task_id)

        await scheduler.delete_task(task.task_id)

        with pytest.raises(TaskNotFoundError):
            await scheduler.get_task(task.task_id)
        assert await store_group.log_store.get_log(task.task_id) is None

    async def test_delete_unknown(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await scheduler.delete_task("01UNKNOWN")


class TestRecovery:
    async def test_running_task_recovered_as_failed(self, scheduler, store_group):
        """重启前 RUNNING 的任务在恢复后为 FAILED（ProcessRestarted），key 空闲"""
        orphan = Task(
            task_id="01JORPHAN0000000000000000A",
            type=TaskType.DOCUMENTATION,
            concurrency_key="d1:documentation",
            domain_id="d1",
            status=TaskStatus.RUNNING,
            created_at=datetime.now(UTC),
            started_at=datetime.now(UTC),
            agent="echo",
            input_payload=DOC_PAYLOAD,
        )
        await save_task(store_group.conn, store_group.task_store, orphan)

        recovered = await scheduler.recover()

        assert [t.task_id for t in recovered] == [orphan.task_id]
        loaded = await scheduler.get_task(orphan.task_id)
        assert loaded.status == TaskStatus.FAILED
        assert loaded.error_code == ErrorCode.PROCESS_RESTARTED
        assert loaded.retryable is True
        assert scheduler.key_holder("d1:documentation") is None

        fresh = await scheduler.submit("documentation", DOC_PAYLOAD, domain_id="d1")
        assert (await scheduler.wait_for_task(fresh.task_id)).status == TaskStatus.COMPLETED


class TestFormatTaskError:
    def test_includes_code_and_hint(self):
        text = format_task_error(ErrorCode.AGENT_TIMEOUT, "Agent exceeded 5s timeout", True)
        assert text == "AgentTimeout: Agent exceeded 5s timeout (retryable)"

    def test_truncated(self):
        assert len(format_task_error(None, "x" * 5000, False)) == 2000
