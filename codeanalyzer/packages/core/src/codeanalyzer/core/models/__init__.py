"""Code Analyzer Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    ACTIVE_STATES,
    RETRYABLE_ERROR_CODES,
    TERMINAL_EVENT_TYPES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ErrorCode,
    EventType,
    LogStream,
    TaskStatus,
    TaskType,
    validate_transition,
)
from .event import TaskEvent
from .inputs import (
    ChatInput,
    ChatMessage,
    CodebaseAnalysisInput,
    DomainSectionInput,
    derive_concurrency_key,
    parse_task_type,
    validate_domain_scope,
    validate_input_payload,
)
from .log import STDERR_PREFIX, LogChunk, render_log_text
from .payloads import (
    ProgressStage,
    TaskCompletedPayload,
    TaskFailedPayload,
    TaskLogPayload,
    TaskProgressPayload,
    TaskStartedPayload,
    format_progress_line,
)
from .task import Task

__all__ = [
    # 枚举
    "TaskStatus",
    "TaskType",
    "EventType",
    "LogStream",
    "ErrorCode",
    "RETRYABLE_ERROR_CODES",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "TERMINAL_EVENT_TYPES",
    "validate_transition",
    # Task
    "Task",
    # 输入
    "CodebaseAnalysisInput",
    "DomainSectionInput",
    "ChatInput",
    "ChatMessage",
    "parse_task_type",
    "validate_input_payload",
    "validate_domain_scope",
    "derive_concurrency_key",
    # 日志
    "LogChunk",
    "STDERR_PREFIX",
    "render_log_text",
    # Event
    "TaskEvent",
    # Payloads
    "ProgressStage",
    "TaskStartedPayload",
    "TaskProgressPayload",
    "TaskLogPayload",
    "TaskCompletedPayload",
    "TaskFailedPayload",
    "format_progress_line",
]
