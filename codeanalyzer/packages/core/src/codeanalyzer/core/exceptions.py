"""任务编排异常体系

每个异常携带机器可读的 code（API 错误体使用）与 retryable 标记。
"""


class TaskError(Exception):
    """任务编排基础异常"""

    code: str = "TaskError"

    def __init__(self, message: str, retryable: bool = False) -> None:
        """
        Args:
            message: 错误描述
            retryable: 客户端是否可以稍后重试同一请求
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class ValidationError(TaskError):
    """提交参数不合法（类型、domain 作用域、payload 结构、agent）

    校验失败时不会创建任务。
    """

    code = "ValidationError"

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message, retryable=False)
        self.details = details or []


class AlreadyInProgressError(TaskError):
    """同一 concurrency key 已有任务在运行"""

    code = "AlreadyInProgress"

    def __init__(self, concurrency_key: str, existing_task_id: str) -> None:
        super().__init__(
            f"A task for '{concurrency_key}' is already in progress",
            retryable=True,
        )
        self.concurrency_key = concurrency_key
        self.existing_task_id = existing_task_id


class TaskNotFoundError(TaskError):
    """任务不存在"""

    code = "TaskNotFound"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class TaskConflictError(TaskError):
    """当前状态不允许该操作（例如删除运行中的任务）"""

    code = "TaskRunning"

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message, retryable=True)
        self.task_id = task_id


class InvalidTransitionError(TaskError):
    """非法状态流转"""

    code = "InvalidTransition"

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Task {task_id}: invalid transition {from_status} -> {to_status}"
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class LogBufferClosedError(TaskError):
    """日志缓冲已关闭或不存在，不再接受追加"""

    code = "LogBufferClosed"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Log buffer for task {task_id} is closed")
        self.task_id = task_id
