"""Agent 异常体系

每个异常对应一个任务失败编码，retryable 标记失败是否为瞬时故障。
"""

from codeanalyzer.core.models.enums import ErrorCode


class AgentError(Exception):
    """Agent 包基础异常"""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, retryable: bool = False) -> None:
        """
        Args:
            message: 错误描述（会写入任务 error 字段，不得包含密钥）
            retryable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class AgentUnavailableError(AgentError):
    """Agent 不可用（CLI 未安装、LLM 端点不可达）"""

    code = ErrorCode.AGENT_UNAVAILABLE

    def __init__(self, agent_id: str, reason: str) -> None:
        super().__init__(f"Agent '{agent_id}' is unavailable: {reason}", retryable=True)
        self.agent_id = agent_id


class AgentProtocolError(AgentError):
    """Agent 输出不符合约定（非法 JSON、非零退出码）"""

    code = ErrorCode.AGENT_PROTOCOL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class AgentTimeoutError(AgentError):
    """Agent 运行超过配置的超时时间"""

    code = ErrorCode.AGENT_TIMEOUT

    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Agent exceeded {timeout_s:g}s timeout", retryable=True)
        self.timeout_s = timeout_s
