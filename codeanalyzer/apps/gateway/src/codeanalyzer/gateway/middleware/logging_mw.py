"""LoggingMiddleware -- 请求级日志

每个请求绑定 request_id（沿用客户端 X-Request-ID，否则生成 ULID），
记录开始、结束与耗时；未处理异常记录后继续抛出。
健康检查请求降为 debug，避免探针刷屏。
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from ulid import ULID

log = structlog.get_logger()

_PROBE_PATHS = frozenset({"/health", "/ready"})


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(ULID())
        path = request.url.path
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=path,
        )

        emit = log.adebug if path in _PROBE_PATHS else log.ainfo
        start_time = time.monotonic()
        await emit("request_started")
        try:
            response = await call_next(request)
        except Exception:
            await log.aexception(
                "request_failed",
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            raise

        await emit(
            "request_completed",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        response.headers["X-Request-ID"] = request_id
        return response
