"""CliAgent -- 以子进程方式运行的编码 agent（aider / gemini）

逐行转发子进程 stdout/stderr，取消或超时时先 terminate 再 kill。
"""

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from codeanalyzer.core.models import LogStream, ProgressStage, Task

from .base import ExecutionContext
from .exceptions import AgentProtocolError, AgentUnavailableError
from .prompts import build_prompt

log = structlog.get_logger()

# terminate 之后等待进程退出的宽限时间（秒）
TERMINATE_GRACE_S = 5.0

# 检测命令超时
DETECT_TIMEOUT_S = 10.0

# 非 JSON 任务结果中保留的 stdout 尾部长度
STDOUT_TAIL_CHARS = 20_000

ArgsBuilder = Callable[[Task, str], list[str]]


class CliAgent:
    """子进程 agent"""

    def __init__(
        self,
        agent_id: str,
        name: str,
        command: str,
        build_args: ArgsBuilder,
        target_directory: str = ".",
        install_url: str = "",
    ) -> None:
        """
        Args:
            agent_id: agent 标识
            name: 展示名称
            command: 可执行文件名
            build_args: 根据任务和 prompt 生成命令行参数
            target_directory: 子进程工作目录（被分析代码库）
            install_url: 安装说明链接
        """
        self.agent_id = agent_id
        self.name = name
        self.command = command
        self.install_url = install_url
        self._build_args = build_args
        self._target_directory = target_directory

    def _workdir(self, task: Task) -> Path:
        return Path(task.input_payload.get("target_directory") or self._target_directory)

    async def run(self, task: Task, ctx: ExecutionContext) -> dict[str, Any]:
        workdir = self._workdir(task)
        prompt = build_prompt(task, str(workdir))
        argv = [self.command, *self._build_args(task, prompt)]

        ctx.progress(ProgressStage.INITIALIZING, f"Starting {self.name}")
        ctx.log(f"[{self.agent_id}] Starting {self.name} ({self.command})\n")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AgentUnavailableError(
                self.agent_id, f"'{self.command}' is not installed or not in PATH"
            ) from e
        except OSError as e:
            raise AgentUnavailableError(self.agent_id, str(e)) from e

        log.info(
            "cli_agent_started",
            task_id=task.task_id,
            agent=self.agent_id,
            pid=proc.pid,
        )
        ctx.log(f"[{self.agent_id}] Prompt dispatched\n")
        ctx.progress(ProgressStage.PROCESSING, f"{self.name} is working")

        stdout_parts: list[str] = []
        try:
            await asyncio.gather(
                self._pump(proc.stdout, LogStream.STDOUT, ctx, stdout_parts),
                self._pump(proc.stderr, LogStream.STDERR, ctx, None),
            )
            code = await proc.wait()
        except asyncio.CancelledError:
            await self._terminate(proc, task.task_id)
            raise

        ctx.log(
            f"[{self.agent_id}] Process exited with code {code}\n",
            LogStream.STDOUT if code == 0 else LogStream.STDERR,
        )
        if code != 0:
            raise AgentProtocolError(f"{self.name} exited with code {code}")

        ctx.progress(ProgressStage.SAVING, "Collecting output")
        return self._collect_result(task, workdir, "".join(stdout_parts))

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        log_stream: LogStream,
        ctx: ExecutionContext,
        sink: list[str] | None,
    ) -> None:
        """逐行读取子进程输出并推送"""
        if stream is None:
            return
        async for raw in stream:
            text = raw.decode("utf-8", errors="replace")
            ctx.log(text, log_stream)
            if sink is not None:
                sink.append(text)

    async def _terminate(self, proc: asyncio.subprocess.Process, task_id: str) -> None:
        """终止子进程：terminate，宽限期后 kill"""
        if proc.returncode is not None:
            return
        log.info("cli_agent_terminating", task_id=task_id, agent=self.agent_id, pid=proc.pid)
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_S)
            except TimeoutError:
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            # 进程已退出
            pass

    def _collect_result(self, task: Task, workdir: Path, stdout: str) -> dict[str, Any]:
        """读取 agent 写出的 JSON 结果；未指定输出文件时返回 stdout 尾部"""
        output_file = task.input_payload.get("output_file")
        if not output_file:
            return {"content": stdout[-STDOUT_TAIL_CHARS:]}

        path = Path(output_file)
        if not path.is_absolute():
            path = workdir / path
        if not path.exists() or not path.read_text(encoding="utf-8").strip():
            return {
                "status": "incomplete",
                "message": "Agent did not write analysis output. Check logs for details.",
                "output_file": str(output_file),
            }
        content = path.read_text(encoding="utf-8")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise AgentProtocolError(
                f"{self.name} wrote invalid JSON to {output_file}: {e.msg}"
            ) from e
        if not isinstance(data, dict):
            raise AgentProtocolError(f"{self.name} output in {output_file} is not an object")
        return data

    async def detect(self) -> bool:
        """执行 `<command> --version` 检测是否安装

        注意: 此方法不抛出异常。
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        try:
            code = await asyncio.wait_for(proc.wait(), timeout=DETECT_TIMEOUT_S)
        except TimeoutError:
            await self._terminate(proc, task_id="")
            return False
        if code != 0:
            log.debug("cli_agent_not_detected", agent=self.agent_id, exit_code=code)
        return code == 0


def aider_agent(
    target_directory: str,
    model: str | None = None,
    extra_args: list[str] | None = None,
) -> CliAgent:
    """创建 aider agent"""

    def build_args(task: Task, prompt: str) -> list[str]:
        args = ["--yes-always", "--no-auto-commits"]
        if model:
            args += ["--model", model]
        args += list(extra_args or [])
        args += ["--message", prompt]
        args += list(task.input_payload.get("files") or [])
        return args

    return CliAgent(
        agent_id="aider",
        name="Aider",
        command="aider",
        build_args=build_args,
        target_directory=target_directory,
        install_url="https://aider.chat/docs/install.html",
    )


def gemini_agent(target_directory: str) -> CliAgent:
    """创建 gemini CLI agent"""

    def build_args(task: Task, prompt: str) -> list[str]:
        return ["--prompt", prompt, "--output-format", "stream-json"]

    return CliAgent(
        agent_id="gemini",
        name="Gemini CLI",
        command="gemini",
        build_args=build_args,
        target_directory=target_directory,
        install_url="https://geminicli.com/docs/get-started/installation",
    )
