"""
Sandbox Manager - 沙箱管理器

编排层使用的统一入口，组合文件桥接、容器生命周期、命令执行、
仓库操作与资源回收。每个实例独占自己的注册表，多个实例互不影响。

用法:
    async with SandboxManager() as sandbox:
        session = await sandbox.create_session()
        mounts = await sandbox.prepare_files(session, {"main.py": "print('ok')"})
        container_id = await sandbox.create_and_start_container(
            ContainerConfig(image="python:3.11-slim", mounts=mounts)
        )
        result = await sandbox.execute_command(container_id, ["python", "/workspace/main.py"])
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType

from sandbox_engine.config.settings import SandboxSettings, get_settings
from sandbox_engine.sandbox.cleanup import CleanupReport, ResourceReclaimer
from sandbox_engine.sandbox.executor import CommandExecutor
from sandbox_engine.sandbox.file_bridge import FileBridge
from sandbox_engine.sandbox.lifecycle import ContainerLifecycleManager
from sandbox_engine.sandbox.repository import RepositoryOperations
from sandbox_engine.sandbox.runtime import ContainerRuntime, DockerCLIRuntime
from sandbox_engine.sandbox.tools import get_tool
from sandbox_engine.sandbox.types import (
    ContainerConfig,
    ContainerInfo,
    ContainerState,
    ExecutionRequest,
    ExecutionResult,
    MountSpec,
    RepositoryHandle,
    SandboxSession,
)
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)


class SandboxManager:
    """沙箱管理器"""

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        runtime: ContainerRuntime | None = None,
        owner_id: str | None = None,
    ) -> None:
        """
        Args:
            settings: 沙箱配置（默认读取环境变量）
            runtime: 容器运行时（默认 Docker CLI，测试时可注入）
            owner_id: 管理器标识
        """
        self.settings = settings or get_settings()
        self.runtime = runtime or DockerCLIRuntime(self.settings.docker_binary)

        self.file_bridge = FileBridge(
            self.settings.temp_host_dir,
            file_policy=self.settings.file_policy,
            container_root=self.settings.container_workdir,
        )
        self.lifecycle = ContainerLifecycleManager(self.runtime, self.settings, owner_id)
        self.executor = CommandExecutor(
            self.lifecycle, default_timeout_ms=self.settings.command_timeout_ms
        )
        self.reclaimer = ResourceReclaimer(self.lifecycle, self.file_bridge)
        self.repository = RepositoryOperations(
            self.executor, self.file_bridge, self.reclaimer, self.settings
        )

    async def __aenter__(self) -> SandboxManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.cleanup_all()

    @property
    def owner_id(self) -> str:
        return self.lifecycle.owner_id

    @property
    def active_containers(self) -> dict[str, ContainerInfo]:
        """当前登记的容器（快照）"""
        return self.lifecycle.containers.snapshot()

    @property
    def active_sessions(self) -> dict[str, SandboxSession]:
        """当前登记的会话目录（快照）"""
        return self.file_bridge.sessions.snapshot()

    @property
    def active_repositories(self) -> dict[str, RepositoryHandle]:
        return self.reclaimer.repositories.snapshot()

    # ------------------------------------------------------------------
    # 文件
    # ------------------------------------------------------------------

    async def create_session(self, prefix: str = "sandbox-") -> SandboxSession:
        return await self.file_bridge.create_session_dir(prefix)

    async def prepare_files(
        self,
        session: SandboxSession | str | Path,
        files: Mapping[str, str | bytes],
        container_root: str | None = None,
    ) -> list[MountSpec]:
        return await self.file_bridge.prepare_files_for_mount(session, files, container_root)

    async def create_output_dir(
        self,
        session: SandboxSession | str | Path,
        name: str = "output",
        container_path: str | None = None,
    ) -> MountSpec:
        return await self.file_bridge.create_output_dir(session, name, container_path)

    # ------------------------------------------------------------------
    # 容器与执行
    # ------------------------------------------------------------------

    async def create_and_start_container(self, config: ContainerConfig | None = None) -> str:
        return await self.lifecycle.create_and_start(config)

    async def container_status(self, container_id: str) -> ContainerState:
        return await self.lifecycle.status(container_id)

    async def execute_command(
        self,
        container_id: str,
        command: str | Sequence[str],
        *,
        timeout_ms: int | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> ExecutionResult:
        return await self.executor.execute(
            container_id, command, timeout_ms=timeout_ms, env=env, cwd=cwd
        )

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return await self.executor.run(request)

    async def run_tool(
        self,
        container_id: str,
        tool_name: str,
        workdir: str | None = None,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """按名称运行内置工具（pytest、ruff、eslint 等）"""
        tool = get_tool(tool_name)
        workdir = workdir or self.settings.container_workdir
        logger.info("Running tool %s in %s", tool.name, container_id[:12])
        return await tool.run(self.executor, container_id, workdir, timeout_ms)

    # ------------------------------------------------------------------
    # 仓库
    # ------------------------------------------------------------------

    async def clone_repository(
        self,
        url: str,
        *,
        branch: str | None = None,
        timeout_ms: int | None = None,
    ) -> RepositoryHandle:
        return await self.repository.clone(url, branch=branch, timeout_ms=timeout_ms)

    async def checkout_repository(self, container_id: str, ref: str) -> RepositoryHandle:
        return await self.repository.checkout(container_id, ref)

    async def list_repository_files(self, container_id: str, path: str = ".") -> list[str]:
        return await self.repository.list_files(container_id, path)

    async def read_repository_file(self, container_id: str, path: str) -> str:
        return await self.repository.read_file(container_id, path)

    # ------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------

    async def cleanup_container(self, container_id: str) -> bool:
        return await self.reclaimer.cleanup_container(container_id)

    async def cleanup_session_dir(self, host_path: str | Path) -> bool:
        return await self.reclaimer.cleanup_session(str(host_path))

    async def cleanup_all(self) -> CleanupReport:
        return await self.reclaimer.cleanup_all()
