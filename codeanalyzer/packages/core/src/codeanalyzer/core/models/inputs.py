"""任务输入参数 -- 按任务类型校验 input_payload

同时定义 concurrency key 的派生规则：
全局任务（codebase-analysis）使用常量 key，domain 任务使用 "<domain_id>:<type>"。
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from .enums import TaskType


class CodebaseAnalysisInput(BaseModel):
    """codebase-analysis 任务参数"""

    model_config = ConfigDict(extra="forbid")

    target_directory: str | None = Field(default=None, description="覆盖默认分析目录")
    user_context: str = Field(default="", description="用户补充上下文")
    output_file: str | None = Field(default=None, description="agent 写出的 JSON 结果路径")


class DomainSectionInput(BaseModel):
    """domain 分析任务参数（documentation / requirements / bugs-security / testing / diagrams）"""

    model_config = ConfigDict(extra="forbid")

    files: list[str] = Field(min_length=1, description="domain 包含的文件")
    include_requirements: bool = Field(default=False, description="是否附带需求分析结果")
    user_context: str = Field(default="", description="用户补充上下文")
    output_file: str | None = Field(default=None, description="agent 写出的 JSON 结果路径")


class ChatMessage(BaseModel):
    """对话消息"""

    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant", "system"]
    content: str = Field(min_length=1)


class ChatInput(BaseModel):
    """chat 任务参数"""

    model_config = ConfigDict(extra="forbid")

    section: str = Field(min_length=1, description="对话所属的 section")
    messages: list[ChatMessage] = Field(min_length=1, description="对话历史")


INPUT_MODELS: dict[TaskType, type[BaseModel]] = {
    TaskType.CODEBASE_ANALYSIS: CodebaseAnalysisInput,
    TaskType.DOCUMENTATION: DomainSectionInput,
    TaskType.REQUIREMENTS: DomainSectionInput,
    TaskType.BUGS_SECURITY: DomainSectionInput,
    TaskType.TESTING: DomainSectionInput,
    TaskType.DIAGRAMS: DomainSectionInput,
    TaskType.CHAT: ChatInput,
}


def parse_task_type(value: str) -> TaskType:
    """解析任务类型字符串

    Raises:
        ValidationError: 未知类型
    """
    try:
        return TaskType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown task type '{value}'",
            details=[{"field": "type", "allowed": [t.value for t in TaskType]}],
        ) from None


def validate_input_payload(task_type: TaskType, payload: dict | None) -> BaseModel:
    """按任务类型校验 input_payload

    Returns:
        解析后的输入模型实例

    Raises:
        ValidationError: payload 结构不合法
    """
    model = INPUT_MODELS[task_type]
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid input_payload for task type '{task_type}'",
            details=details,
        ) from None


def validate_domain_scope(task_type: TaskType, domain_id: str | None) -> None:
    """校验 domain_id 与任务类型是否匹配

    Raises:
        ValidationError: domain 任务缺少 domain_id，或全局任务带了 domain_id
    """
    if task_type.is_global:
        if domain_id:
            raise ValidationError(
                f"Task type '{task_type}' is global and does not accept domain_id"
            )
        return
    if not domain_id or not domain_id.strip():
        raise ValidationError(f"Task type '{task_type}' requires domain_id")


def derive_concurrency_key(task_type: TaskType, domain_id: str | None) -> str:
    """派生 concurrency key"""
    if task_type.is_global:
        return task_type.value
    return f"{domain_id}:{task_type.value}"
