"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、全局并发上限、订阅者队列上限、日志缓冲保留数量等可配置项。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("CODEANALYZER_DATA_DIR", "data"))


def _get_int(name: str, default: int) -> int:
    """读取整数环境变量，非法值回退默认值"""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "CODEANALYZER_DB_PATH",
        str(_get_base_dir() / "sqlite" / "codeanalyzer.db"),
    )


def get_max_concurrent_tasks() -> int:
    """全局同时运行的任务上限，0 表示不限制"""
    return max(0, _get_int("CODEANALYZER_MAX_CONCURRENT_TASKS", 0))


def get_subscriber_queue_max() -> int:
    """单个订阅者的事件队列上限，溢出后该订阅者被截断"""
    return max(1, _get_int("CODEANALYZER_SUBSCRIBER_QUEUE_MAX", 1000))


def get_log_retain_closed() -> int:
    """内存中保留的已关闭日志缓冲数量"""
    return max(0, _get_int("CODEANALYZER_LOG_RETAIN_CLOSED", 100))


def get_log_format() -> str:
    """日志渲染模式：json 或 dev"""
    value = os.environ.get("CODEANALYZER_LOG_FORMAT", "dev").strip().lower()
    return value if value in ("json", "dev") else "dev"


def get_log_level() -> str:
    return os.environ.get("CODEANALYZER_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def logfire_enabled() -> bool:
    """是否向 Logfire 发送数据（LOGFIRE_SEND_TO_LOGFIRE=true）"""
    return os.environ.get("LOGFIRE_SEND_TO_LOGFIRE", "false").strip().lower() == "true"


# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = _get_int("CODEANALYZER_SSE_HEARTBEAT_INTERVAL", 15)

# 错误信息写入事件时的最大长度
ERROR_MESSAGE_MAX_LENGTH: int = 2000
