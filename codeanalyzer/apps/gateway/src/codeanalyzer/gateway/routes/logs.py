"""任务日志路由

GET /api/tasks/{task_id}/logs: 读取任务日志文本。
运行中的任务返回当前缓冲内容，结束的任务返回落盘内容；尚无日志时 content 为空串。
"""

from codeanalyzer.core.exceptions import TaskError
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_scheduler
from ..errors import task_error_response

router = APIRouter()


class TaskLogsResponse(BaseModel):
    """任务日志响应"""

    task_id: str
    status: str
    log_handle: str
    content: str
    chunk_count: int


@router.get("/api/tasks/{task_id}/logs", response_model=TaskLogsResponse)
async def get_task_logs(task_id: str, scheduler=Depends(get_scheduler)):
    """读取任务日志"""
    try:
        task, content, chunk_count = await scheduler.get_logs(task_id)
    except TaskError as e:
        return task_error_response(e)

    return TaskLogsResponse(
        task_id=task.task_id,
        status=task.status.value,
        log_handle=task.log_handle,
        content=content,
        chunk_count=chunk_count,
    )
