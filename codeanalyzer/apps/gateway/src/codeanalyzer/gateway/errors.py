"""API 错误响应 -- 统一错误体 {"error": {"code", "message", ...}}"""

from codeanalyzer.core.exceptions import (
    AlreadyInProgressError,
    TaskConflictError,
    TaskError,
    TaskNotFoundError,
    ValidationError,
)
from starlette.responses import JSONResponse

_STATUS_CODES: dict[type[TaskError], int] = {
    ValidationError: 422,
    AlreadyInProgressError: 409,
    TaskConflictError: 409,
    TaskNotFoundError: 404,
}


def error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    """构建错误响应"""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, **extra}},
    )


def task_error_response(exc: TaskError) -> JSONResponse:
    """把任务编排异常映射为错误响应"""
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)),
        500,
    )
    extra: dict = {}
    if isinstance(exc, AlreadyInProgressError):
        extra["existing_task_id"] = exc.existing_task_id
        extra["concurrency_key"] = exc.concurrency_key
    elif isinstance(exc, ValidationError) and exc.details:
        extra["details"] = exc.details
    if status_code != 500:
        extra["retryable"] = exc.retryable
    return error_response(status_code, exc.code, exc.message, **extra)
