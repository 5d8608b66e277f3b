"""日志初始化

structlog 与标准库 logging 共用一条处理链，第三方库（aiosqlite、LiteLLM 等）
经由 ProcessorFormatter 输出同样格式的日志。
渲染模式由 CODEANALYZER_LOG_FORMAT 决定，Logfire 由 LOGFIRE_SEND_TO_LOGFIRE 开启。
"""

import logging

import structlog
from codeanalyzer.core.config import get_log_format, get_log_level, logfire_enabled
from fastapi import FastAPI
from structlog.types import Processor

# 这些库在 INFO 级别输出过多，统一提到 WARNING
_NOISY_LOGGERS = ("aiosqlite", "httpx", "httpcore", "LiteLLM", "sse_starlette")


def _build_processors(json_mode: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_mode:
        processors.append(structlog.processors.dict_tracebacks)
    return processors


def _install_root_handler(formatter: logging.Formatter, level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging() -> None:
    """初始化 structlog 与标准库 logging

    - json: 每行一个 JSON 对象，异常栈展开为结构化字段
    - dev (默认): 彩色控制台输出
    """
    json_mode = get_log_format() == "json"
    processors = _build_processors(json_mode)
    renderer: Processor = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if json_mode
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _install_root_handler(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=processors),
        get_log_level(),
    )


def setup_logfire(app: FastAPI) -> None:
    """按需开启 Logfire（需要安装 observability extra 并配置 LOGFIRE_TOKEN）"""
    if not logfire_enabled():
        return
    try:
        import logfire

        logfire.configure()
        logfire.instrument_fastapi(app)
    except Exception as e:
        structlog.get_logger().warning("logfire_init_failed", error=str(e))
