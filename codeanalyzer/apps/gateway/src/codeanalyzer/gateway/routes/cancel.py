"""任务取消路由

POST /api/tasks/{task_id}/cancel: 取消任务。
- 202: 已向运行中的任务发出取消请求，终态稍后通过 task:cancelled 推送
- 200: 任务已处于终态（幂等，无副作用）或等待中的任务已直接取消
- 404: 任务不存在
"""

from codeanalyzer.core.exceptions import TaskError
from codeanalyzer.core.models import TaskStatus
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.responses import JSONResponse

from ..deps import get_scheduler
from ..errors import task_error_response

router = APIRouter()


class CancelResponse(BaseModel):
    """取消响应"""

    task_id: str
    status: str
    cancel_requested: bool


@router.post("/api/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, scheduler=Depends(get_scheduler)):
    """取消任务"""
    try:
        task = await scheduler.cancel(task_id)
    except TaskError as e:
        return task_error_response(e)

    requested = task.status == TaskStatus.RUNNING
    return JSONResponse(
        status_code=202 if requested else 200,
        content=CancelResponse(
            task_id=task.task_id,
            status=task.status.value,
            cancel_requested=requested,
        ).model_dump(),
    )
