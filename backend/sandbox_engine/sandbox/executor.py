"""
Command Executor - 命令执行引擎

在运行中的容器内执行命令：
- 执行前检查容器状态（不存在/未运行直接失败）
- 分别缓冲 stdout / stderr，完整结束后返回结果
- 超时后强制终止容器内进程（容器保持运行，可单独清理）

注意：不支持对同一容器并发执行多个命令，调用方需自行串行化。
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import time

from sandbox_engine.exceptions import CommandExecutionError, CommandTimeoutError
from sandbox_engine.sandbox.lifecycle import ContainerLifecycleManager
from sandbox_engine.sandbox.runtime import RuntimeAPIError
from sandbox_engine.sandbox.types import ContainerState, ExecutionRequest, ExecutionResult
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_argv(command: str | Sequence[str]) -> list[str]:
    """字符串命令交给 sh -c 执行，序列原样执行"""
    if isinstance(command, str):
        if not command.strip():
            raise CommandExecutionError("Command must not be empty", details={"command": command})
        return ["sh", "-c", command]

    argv = [str(arg) for arg in command]
    if not argv:
        raise CommandExecutionError("Command must not be empty", details={"command": argv})
    return argv


class CommandExecutor:
    """
    命令执行器

    通过生命周期管理器引用容器，不持有容器。
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        default_timeout_ms: int = 30_000,
    ) -> None:
        self.lifecycle = lifecycle
        self.default_timeout_ms = default_timeout_ms

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """执行 ExecutionRequest"""
        return await self.execute(
            request.container_id,
            request.command,
            timeout_ms=request.timeout_ms,
            env=request.env or None,
            cwd=request.cwd,
        )

    async def execute(
        self,
        container_id: str,
        command: str | Sequence[str],
        *,
        timeout_ms: int | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> ExecutionResult:
        """
        在容器内执行命令

        Args:
            container_id: 容器 ID
            command: argv 序列，或由 sh -c 执行的字符串
            timeout_ms: 超时时间（毫秒），默认使用全局配置
            env: 额外环境变量
            cwd: 工作目录

        Returns:
            ExecutionResult: 原始退出码与捕获的输出

        Raises:
            CommandExecutionError: 容器不存在/未运行，或运行时 exec 失败
            CommandTimeoutError: 超时（容器内进程已被终止）
        """
        argv = normalize_argv(command)
        timeout_ms = timeout_ms if timeout_ms is not None else self.default_timeout_ms
        context = {"container_id": container_id, "command": argv, "timeout_ms": timeout_ms}

        state = await self.lifecycle.status(container_id)

        if state != ContainerState.RUNNING:
            raise CommandExecutionError(
                f"Container is not running: {container_id} ({state.value})",
                details={**context, "state": state.value},
            )

        info = self.lifecycle.get(container_id)
        user = info.user if info else self.lifecycle.settings.container_user

        logger.debug("Executing in %s: %s", container_id[:12], argv)
        start_time = time.monotonic()

        try:
            process = await self.lifecycle.runtime.exec_start(
                container_id,
                argv,
                env=dict(env) if env else None,
                workdir=cwd,
                user=user,
            )
        except RuntimeAPIError as e:
            raise CommandExecutionError(
                f"Failed to start exec: {e}", details=context, cause=e
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError as e:
            logger.warning(
                "Command timed out after %d ms in %s: %s", timeout_ms, container_id[:12], argv
            )
            try:
                await process.terminate()
            except RuntimeAPIError as kill_error:
                logger.warning("Failed to terminate timed out command: %s", kill_error)
            raise CommandTimeoutError(
                f"Command timed out after {timeout_ms} ms",
                details=context,
                cause=e,
            ) from e
        except RuntimeAPIError as e:
            raise CommandExecutionError(
                f"Command execution failed: {e}", details=context, cause=e
            ) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        exit_code = process.returncode if process.returncode is not None else -1

        logger.debug(
            "Command finished in %s: exit=%d duration=%dms",
            container_id[:12],
            exit_code,
            duration_ms,
        )
        return ExecutionResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
        )
