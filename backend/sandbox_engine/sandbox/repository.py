"""
Repository Operations - 仓库操作

在隔离容器中克隆远程仓库，并提供受限的检出、列举与读取：
- 仅允许 https 协议（在任何副作用之前校验）
- 所有读取/列举路径必须位于克隆目录之下
- 克隆容器显式覆盖网络策略（需要访问远程仓库）
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
import posixpath
from urllib.parse import urlsplit, urlunsplit

from sandbox_engine.config.settings import SandboxSettings
from sandbox_engine.exceptions import (
    CommandExecutionError,
    FileSystemError,
    SandboxError,
    SecurityViolationError,
)
from sandbox_engine.sandbox.cleanup import ResourceReclaimer
from sandbox_engine.sandbox.executor import CommandExecutor
from sandbox_engine.sandbox.file_bridge import FileBridge, is_descendant
from sandbox_engine.sandbox.registry import ResourceRegistry
from sandbox_engine.sandbox.types import ContainerConfig, ExecutionResult, RepositoryHandle
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)

ALLOWED_SCHEMES = frozenset({"https"})
CLONE_DIR_NAME = "repo"

# 容器以非 root 用户运行：HOME 指向可写的 /tmp，禁止交互式凭据提示，
# 克隆目录属主与执行用户可能不同，需要放行 safe.directory
GIT_ENV = {
    "HOME": "/tmp",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_CONFIG_COUNT": "1",
    "GIT_CONFIG_KEY_0": "safe.directory",
    "GIT_CONFIG_VALUE_0": "*",
}


def redact_url(url: str) -> str:
    """移除 URL 中的凭据，用于日志与错误上下文"""
    parts = urlsplit(url)
    if parts.username or parts.password:
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, f"***@{netloc}", parts.path, parts.query, ""))
    return url


def validate_repository_url(url: str) -> str:
    """
    校验仓库 URL

    Raises:
        SecurityViolationError: 非 https 协议、缺少主机名或包含控制字符
    """
    if not url or url.startswith("-") or any(ch.isspace() or ord(ch) < 32 for ch in url):
        raise SecurityViolationError(
            "Invalid repository URL",
            details={"url": redact_url(url)},
        )

    parts = urlsplit(url)
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise SecurityViolationError(
            f"Repository URL must use https, got {parts.scheme or 'no scheme'!r}",
            details={"url": redact_url(url), "scheme": parts.scheme},
        )
    if not parts.hostname:
        raise SecurityViolationError(
            "Repository URL has no host",
            details={"url": redact_url(url)},
        )
    return url


def validate_ref(ref: str, kind: str = "ref") -> str:
    """校验分支/提交引用，防止被解析为命令行选项"""
    if not ref or ref.startswith("-") or any(ch.isspace() or ord(ch) < 32 for ch in ref):
        raise SecurityViolationError(
            f"Invalid git {kind}: {ref!r}",
            details={kind: ref},
        )
    return ref


class RepositoryOperations:
    """
    仓库操作

    仓库句柄按容器 ID 登记在回收器的仓库注册表中。
    """

    def __init__(
        self,
        executor: CommandExecutor,
        file_bridge: FileBridge,
        reclaimer: ResourceReclaimer,
        settings: SandboxSettings,
    ) -> None:
        self.executor = executor
        self.file_bridge = file_bridge
        self.reclaimer = reclaimer
        self.settings = settings

    @property
    def repositories(self) -> ResourceRegistry[RepositoryHandle]:
        return self.reclaimer.repositories

    def get_handle(self, container_id: str) -> RepositoryHandle:
        handle = self.repositories.get(container_id)
        if handle is None:
            raise CommandExecutionError(
                f"No repository cloned in container: {container_id}",
                details={"container_id": container_id},
            )
        return handle

    async def _run_git(
        self,
        container_id: str,
        argv: list[str],
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        result = await self.executor.execute(container_id, argv, timeout_ms=timeout_ms)
        if result.exit_code != 0:
            raise CommandExecutionError(
                f"Git command failed with exit code {result.exit_code}",
                details={
                    "container_id": container_id,
                    "command": [redact_url(arg) for arg in argv],
                    "exit_code": result.exit_code,
                    "stderr": result.stderr.strip(),
                },
            )
        return result

    async def clone(
        self,
        url: str,
        *,
        branch: str | None = None,
        timeout_ms: int | None = None,
    ) -> RepositoryHandle:
        """
        在新容器中克隆仓库

        Args:
            url: https 仓库地址
            branch: 分支或标签（可选）
            timeout_ms: 克隆超时（毫秒）

        Returns:
            RepositoryHandle: 仓库句柄

        Raises:
            SecurityViolationError: URL 或分支不合法（未产生任何副作用）
            CommandExecutionError: git clone 返回非零退出码（附带 stderr）
            CommandTimeoutError: 克隆超时
        """
        validate_repository_url(url)
        if branch is not None:
            validate_ref(branch, "branch")

        workdir = self.settings.container_workdir
        clone_path = posixpath.join(workdir, CLONE_DIR_NAME)

        session = await self.file_bridge.create_session_dir("repo-")
        container_id: str | None = None
        try:
            mount = await self.file_bridge.create_output_dir(
                session, CLONE_DIR_NAME, container_path=clone_path
            )
            container_id = await self.executor.lifecycle.create_and_start(
                ContainerConfig(
                    image=self.settings.git_image,
                    mounts=[mount],
                    env=dict(GIT_ENV),
                    workdir=workdir,
                    network_mode=self.settings.clone_network_mode,
                    labels={"sandbox-engine.role": "repository"},
                )
            )

            argv = ["git", "clone", "--depth", "1"]
            if branch:
                argv.extend(["--branch", branch])
            argv.extend(["--", url, clone_path])

            logger.info("Cloning %s into %s", redact_url(url), container_id[:12])
            await self._run_git(
                container_id, argv, timeout_ms or self.settings.clone_timeout_ms
            )

            if branch:
                ref = branch
            else:
                head = await self._run_git(
                    container_id, ["git", "-C", clone_path, "rev-parse", "HEAD"]
                )
                ref = head.stdout.strip()
        except SandboxError:
            # 克隆失败时回收本次创建的资源
            if container_id is not None:
                await self.reclaimer.cleanup_container(container_id)
            await self.reclaimer.cleanup_session(str(session.host_path))
            raise

        handle = RepositoryHandle(
            url=url,
            host_path=session.host_path,
            clone_host_path=Path(mount.host_path),
            clone_path=clone_path,
            container_id=container_id,
            ref=ref,
            session_id=session.session_id,
        )
        self.repositories.add(container_id, handle)
        logger.info("Repository cloned: %s @ %s", redact_url(url), ref)
        return handle

    async def checkout(self, container_id: str, ref: str) -> RepositoryHandle:
        """检出指定分支/标签/提交（浅克隆需要先 fetch）"""
        validate_ref(ref)
        handle = self.get_handle(container_id)

        await self._run_git(
            container_id,
            ["git", "-C", handle.clone_path, "fetch", "--depth", "1", "origin", ref],
            self.settings.clone_timeout_ms,
        )
        await self._run_git(
            container_id, ["git", "-C", handle.clone_path, "checkout", "--detach", "FETCH_HEAD"]
        )
        head = await self._run_git(
            container_id, ["git", "-C", handle.clone_path, "rev-parse", "HEAD"]
        )
        handle.ref = head.stdout.strip()
        logger.info("Repository in %s checked out at %s", container_id[:12], handle.ref)
        return handle

    async def _confine(self, handle: RepositoryHandle, path: str, *, allow_root: bool) -> str:
        """
        将路径限制在克隆目录之下

        先做词法检查，再通过绑定挂载在主机侧解析符号链接。

        Returns:
            容器内的规范化绝对路径
        """
        if not path:
            path = "."
        candidate = path if PurePosixPath(path).is_absolute() else posixpath.join(
            handle.clone_path, path
        )
        normalized = posixpath.normpath(candidate)

        root = PurePosixPath(handle.clone_path)
        target = PurePosixPath(normalized)
        inside = target == root if allow_root else False
        inside = inside or root in target.parents
        if not inside:
            raise SecurityViolationError(
                f"Path escapes repository root: {path}",
                details={"path": path, "clone_path": handle.clone_path},
            )

        relative = target.relative_to(root).as_posix()
        host_root = handle.clone_host_path

        def resolve() -> tuple[Path, Path]:
            return host_root.resolve(), (host_root / relative).resolve()

        resolved_root, resolved = await asyncio.to_thread(resolve)
        if not is_descendant(resolved, resolved_root, strict=not allow_root):
            raise SecurityViolationError(
                f"Path resolves outside repository root: {path}",
                details={"path": path, "clone_path": handle.clone_path},
            )
        return normalized

    async def list_files(self, container_id: str, path: str = ".") -> list[str]:
        """
        列出目录下的文件（相对路径，不含 .git）

        Raises:
            CommandExecutionError: 容器中没有克隆的仓库
            SecurityViolationError: 路径不在克隆目录之下
            FileSystemError: 目录不存在或列举失败
        """
        handle = self.get_handle(container_id)
        target = await self._confine(handle, path, allow_root=True)

        result = await self.executor.execute(
            container_id,
            ["find", target, "-name", ".git", "-prune", "-o", "-type", "f", "-print"],
        )
        if result.exit_code != 0 or "No such file or directory" in result.stderr:
            raise FileSystemError(
                f"Failed to list files in {path}",
                details={
                    "container_id": container_id,
                    "path": path,
                    "exit_code": result.exit_code,
                    "stderr": result.stderr.strip(),
                },
            )

        files = [
            posixpath.relpath(line, target)
            for line in result.stdout.splitlines()
            if line.strip()
        ]
        return sorted(files)

    async def read_file(self, container_id: str, path: str) -> str:
        """
        读取仓库内文件

        Raises:
            SecurityViolationError: 路径不在克隆目录之下（不会执行任何命令）
            FileSystemError: 文件不存在或无法读取
        """
        handle = self.get_handle(container_id)
        target = await self._confine(handle, path, allow_root=False)

        result = await self.executor.execute(container_id, ["cat", "--", target])
        if result.exit_code != 0:
            raise FileSystemError(
                f"Failed to read file: {path}",
                details={
                    "container_id": container_id,
                    "path": path,
                    "exit_code": result.exit_code,
                    "stderr": result.stderr.strip(),
                },
            )
        return result.stdout
