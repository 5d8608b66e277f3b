"""任务路由

POST /api/tasks: 提交分析任务。
- 202: 已受理，返回 task_id + PENDING
- 409: 同一 concurrency key 已有任务在运行（AlreadyInProgress + existing_task_id）
- 422: 参数不合法
GET /api/tasks/pending: 未结束的任务（PENDING + RUNNING）。
GET /api/tasks/{task_id}: 任务详情。
DELETE /api/tasks/{task_id}: 删除任务，运行中返回 409。
"""

from typing import Any

from codeanalyzer.core.exceptions import TaskError
from codeanalyzer.core.models import Task
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from ..deps import get_scheduler
from ..errors import task_error_response

router = APIRouter()


class SubmitTaskRequest(BaseModel):
    """任务提交请求体"""

    type: str = Field(description="任务类型")
    domain_id: str | None = Field(default=None, description="domain 标识，全局任务留空")
    agent: str | None = Field(default=None, description="执行 agent，留空使用默认值")
    input_payload: dict[str, Any] = Field(default_factory=dict, description="任务参数")


class SubmitTaskResponse(BaseModel):
    """任务提交响应"""

    task_id: str
    status: str
    concurrency_key: str


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    type: str
    domain_id: str | None
    concurrency_key: str
    status: str
    agent: str
    created_at: str
    started_at: str | None


class PendingTasksResponse(BaseModel):
    """未结束任务列表响应"""

    tasks: list[TaskSummary]


def task_to_summary(task: Task) -> TaskSummary:
    return TaskSummary(
        task_id=task.task_id,
        type=task.type.value,
        domain_id=task.domain_id,
        concurrency_key=task.concurrency_key,
        status=task.status.value,
        agent=task.agent,
        created_at=task.created_at.isoformat(),
        started_at=task.started_at.isoformat() if task.started_at else None,
    )


@router.post("/api/tasks", status_code=202, response_model=SubmitTaskResponse)
async def submit_task(
    body: SubmitTaskRequest,
    scheduler=Depends(get_scheduler),
):
    """提交任务，准入失败时不创建任何记录"""
    try:
        task = await scheduler.submit(
            body.type,
            input_payload=body.input_payload,
            domain_id=body.domain_id,
            agent=body.agent,
        )
    except TaskError as e:
        return task_error_response(e)

    return JSONResponse(
        status_code=202,
        content=SubmitTaskResponse(
            task_id=task.task_id,
            status=task.status.value,
            concurrency_key=task.concurrency_key,
        ).model_dump(),
    )


@router.get("/api/tasks/pending", response_model=PendingTasksResponse)
async def list_pending_tasks(scheduler=Depends(get_scheduler)):
    """查询未结束的任务，按 created_at 倒序"""
    return PendingTasksResponse(
        tasks=[task_to_summary(t) for t in scheduler.list_pending()]
    )


@router.get("/api/tasks/{task_id}")
async def get_task_detail(task_id: str, scheduler=Depends(get_scheduler)):
    """查询任务详情"""
    try:
        task = await scheduler.get_task(task_id)
    except TaskError as e:
        return task_error_response(e)
    return {"task": task.model_dump(mode="json")}


@router.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, scheduler=Depends(get_scheduler)):
    """删除任务记录与日志

    - 运行中的任务返回 409（需先取消）
    - 不存在的任务返回 404
    """
    try:
        await scheduler.delete_task(task_id)
    except TaskError as e:
        return task_error_response(e)
    return {"task_id": task_id, "deleted": True}
