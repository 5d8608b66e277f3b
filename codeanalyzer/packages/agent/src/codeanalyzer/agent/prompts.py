"""任务指令构建

按任务类型生成发送给 agent 的指令文本与 chat messages。
"""

from codeanalyzer.core.models import Task, TaskType

# 产出 JSON 结果的任务类型，其余类型产出 markdown
JSON_OUTPUT_TYPES: set[TaskType] = {
    TaskType.CODEBASE_ANALYSIS,
    TaskType.REQUIREMENTS,
    TaskType.BUGS_SECURITY,
    TaskType.TESTING,
    TaskType.DIAGRAMS,
}

_INSTRUCTIONS: dict[TaskType, str] = {
    TaskType.CODEBASE_ANALYSIS: (
        "Analyze the repository and split it into business domains. "
        'Respond with JSON: {"summary": str, "domains": [{"id": str, "name": str, '
        '"description": str, "files": [str]}]}.'
    ),
    TaskType.DOCUMENTATION: (
        "Write developer documentation in markdown for the domain built from the "
        "focus files. Cover responsibilities, main flows and extension points."
    ),
    TaskType.REQUIREMENTS: (
        "Extract the business requirements implemented by the focus files. "
        'Respond with JSON: {"requirements": [{"id": str, "title": str, '
        '"description": str, "priority": str}]}.'
    ),
    TaskType.BUGS_SECURITY: (
        "Review the focus files for bugs and security issues. "
        'Respond with JSON: {"findings": [{"title": str, "severity": '
        '"critical|high|medium|low", "file": str, "description": str, '
        '"recommendation": str}]}.'
    ),
    TaskType.TESTING: (
        "Propose missing tests for the focus files. "
        'Respond with JSON: {"tests": [{"name": str, "file": str, "scenario": str}]}.'
    ),
    TaskType.DIAGRAMS: (
        "Describe the domain with mermaid diagrams. "
        'Respond with JSON: {"diagrams": [{"title": str, "type": str, "mermaid": str}]}.'
    ),
    TaskType.CHAT: (
        "You are assisting with the analysis section of a codebase domain. "
        "Answer in markdown."
    ),
}


def get_instruction(task_type: TaskType) -> str:
    """获取任务类型对应的指令"""
    return _INSTRUCTIONS[task_type]


def build_prompt(task: Task, target_directory: str) -> str:
    """构建 CLI agent 使用的单段 prompt"""
    payload = task.input_payload
    files = payload.get("files") or []
    lines = [
        get_instruction(task.type),
        "",
        "Execution context:",
        f"- Working directory: {payload.get('target_directory') or target_directory}",
    ]
    if task.domain_id:
        lines.append(f"- Domain: {task.domain_id}")
    if files:
        lines.append(f"- Focus files: {', '.join(files)}")
    else:
        lines.append("- Focus files: analyze based on repository context")
    if payload.get("include_requirements"):
        lines.append("- Take the existing requirements analysis into account.")
    if payload.get("output_file"):
        lines.append(
            f"- Required output file: {payload['output_file']} "
            "(create/update it as valid JSON)."
        )
    if payload.get("user_context"):
        lines.extend(["", "Additional context from the user:", payload["user_context"]])
    return "\n".join(lines)


def build_messages(task: Task, target_directory: str) -> list[dict[str, str]]:
    """构建 chat completion messages"""
    messages = [{"role": "system", "content": get_instruction(task.type)}]
    if task.type == TaskType.CHAT:
        section = task.input_payload.get("section", "")
        messages.append(
            {"role": "system", "content": f"Section: {section}. Domain: {task.domain_id}."}
        )
        messages.extend(
            {"role": m["role"], "content": m["content"]}
            for m in task.input_payload.get("messages", [])
        )
        return messages
    messages.append({"role": "user", "content": build_prompt(task, target_directory)})
    return messages
