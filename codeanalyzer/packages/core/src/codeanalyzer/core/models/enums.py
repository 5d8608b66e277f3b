"""枚举定义 -- 任务状态机、任务类型、事件类型

包含 TaskStatus 状态机、TaskType、EventType、LogStream、ErrorCode 枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机，只允许向前流转"""

    # 活跃状态
    PENDING = "PENDING"
    RUNNING = "RUNNING"

    # 终态
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

ACTIVE_STATES: set[TaskStatus] = {TaskStatus.PENDING, TaskStatus.RUNNING}


class TaskType(StrEnum):
    """分析任务类型"""

    CODEBASE_ANALYSIS = "codebase-analysis"
    DOCUMENTATION = "documentation"
    REQUIREMENTS = "requirements"
    BUGS_SECURITY = "bugs-security"
    TESTING = "testing"
    DIAGRAMS = "diagrams"
    CHAT = "chat"

    @property
    def is_global(self) -> bool:
        """全局任务不绑定 domain，整个系统同一时刻只能运行一个"""
        return self is TaskType.CODEBASE_ANALYSIS


class EventType(StrEnum):
    """推送给客户端的事件类型"""

    TASK_STARTED = "task:started"
    TASK_PROGRESS = "task:progress"
    TASK_LOG = "task:log"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    TASK_CANCELLED = "task:cancelled"


TERMINAL_EVENT_TYPES: dict[TaskStatus, EventType] = {
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
    TaskStatus.CANCELLED: EventType.TASK_CANCELLED,
}


class LogStream(StrEnum):
    """日志来源流"""

    STDOUT = "stdout"
    STDERR = "stderr"


class ErrorCode(StrEnum):
    """任务失败原因编码"""

    VALIDATION_ERROR = "ValidationError"
    AGENT_UNAVAILABLE = "AgentUnavailable"
    AGENT_PROTOCOL_ERROR = "AgentProtocolError"
    AGENT_TIMEOUT = "AgentTimeout"
    PROCESS_RESTARTED = "ProcessRestarted"
    INTERNAL_ERROR = "InternalError"
    CANCELLED = "Cancelled"


# 可重试的失败原因（瞬时故障）
RETRYABLE_ERROR_CODES: set[ErrorCode] = {
    ErrorCode.AGENT_UNAVAILABLE,
    ErrorCode.AGENT_TIMEOUT,
    ErrorCode.PROCESS_RESTARTED,
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
