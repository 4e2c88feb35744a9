"""
File Bridge - 主机与容器之间的文件桥接

负责：
1. 在配置的临时根目录下分配会话目录
2. 校验并写入待挂载文件（路径穿越防护在任何写入之前完成）
3. 生成只读挂载描述，以及可写的输出目录
4. 删除会话目录（拒绝删除临时根目录之外的路径）
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime
import os
from pathlib import Path, PurePosixPath, PureWindowsPath
import posixpath
import shutil
import uuid

from sandbox_engine.config.execution_config import FilePolicy
from sandbox_engine.exceptions import (
    FileSystemError,
    ResourceLimitError,
    SecurityViolationError,
)
from sandbox_engine.sandbox.registry import ResourceRegistry
from sandbox_engine.sandbox.types import MountSpec, SandboxSession
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_DIR_MODE = 0o755
SOURCE_FILE_MODE = 0o644
# 容器以非 root 用户运行，输出目录需要对其可写
OUTPUT_DIR_MODE = 0o777


def is_descendant(path: Path, root: Path, *, strict: bool = True) -> bool:
    """判断 path 是否位于 root 之下（两者都应已 resolve）"""
    if path == root:
        return not strict
    return root in path.parents


class FileBridge:
    """
    文件桥接器

    所有会话目录都位于 temp_root 之下，所有路径操作在 I/O 之前校验。
    """

    def __init__(
        self,
        temp_root: str | Path,
        file_policy: FilePolicy | None = None,
        container_root: str = "/workspace",
    ) -> None:
        self.temp_root = Path(temp_root).expanduser().resolve()
        self.file_policy = file_policy or FilePolicy()
        self.container_root = container_root
        self.sessions: ResourceRegistry[SandboxSession] = ResourceRegistry("session")

    # ------------------------------------------------------------------
    # 会话目录
    # ------------------------------------------------------------------

    async def create_session_dir(self, prefix: str = "sandbox-") -> SandboxSession:
        """
        分配新的会话目录

        Args:
            prefix: 目录名前缀

        Returns:
            SandboxSession: 会话信息

        Raises:
            SecurityViolationError: 前缀包含路径分隔符
            FileSystemError: 目录创建失败
        """
        if "/" in prefix or "\\" in prefix or prefix in (".", ".."):
            raise SecurityViolationError(
                f"Invalid session prefix: {prefix!r}",
                details={"prefix": prefix},
            )

        timestamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        session_id = f"{prefix}{timestamp}-{uuid.uuid4().hex[:8]}"
        host_path = self.temp_root / session_id

        def create() -> None:
            self.temp_root.mkdir(parents=True, exist_ok=True)
            host_path.mkdir(mode=SESSION_DIR_MODE)
            os.chmod(host_path, SESSION_DIR_MODE)

        try:
            await asyncio.to_thread(create)
        except OSError as e:
            raise FileSystemError(
                f"Failed to create session directory: {e}",
                details={"path": str(host_path)},
                cause=e,
            ) from e

        session = SandboxSession(session_id=session_id, host_path=host_path)
        self.sessions.add(session_id, session)
        logger.info("Session directory created: %s", host_path)
        return session

    async def cleanup_session_dir(self, host_path: str | Path) -> None:
        """
        删除会话目录（目录不存在视为成功）

        Raises:
            SecurityViolationError: 路径不在临时根目录之下
            FileSystemError: 删除失败
        """
        resolved = Path(host_path).expanduser().resolve()
        if not is_descendant(resolved, self.temp_root):
            raise SecurityViolationError(
                f"Refusing to delete path outside sandbox root: {host_path}",
                details={"path": str(host_path), "root": str(self.temp_root)},
            )

        def remove() -> bool:
            if not resolved.exists():
                return False
            shutil.rmtree(resolved)
            return True

        try:
            removed = await asyncio.to_thread(remove)
        except FileNotFoundError:
            removed = False
        except OSError as e:
            raise FileSystemError(
                f"Failed to remove session directory: {e}",
                details={"path": str(resolved)},
                cause=e,
            ) from e

        for session_id, session in self.sessions.snapshot().items():
            if session.host_path.resolve() == resolved:
                self.sessions.pop(session_id)

        if removed:
            logger.info("Session directory removed: %s", resolved)
        else:
            logger.debug("Session directory already absent: %s", resolved)

    # ------------------------------------------------------------------
    # 文件挂载
    # ------------------------------------------------------------------

    def _resolve_session_dir(self, session_dir: str | Path | SandboxSession) -> Path:
        if isinstance(session_dir, SandboxSession):
            session_dir = session_dir.host_path
        resolved = Path(session_dir).expanduser().resolve()
        if not is_descendant(resolved, self.temp_root):
            raise SecurityViolationError(
                f"Session directory is outside sandbox root: {session_dir}",
                details={"path": str(session_dir), "root": str(self.temp_root)},
            )
        return resolved

    def resolve_relative(self, session_dir: Path, relative_path: str) -> Path:
        """
        解析会话内的相对路径

        Raises:
            SecurityViolationError: 绝对路径或解析结果不在会话目录之下
        """
        if (
            not relative_path
            or PurePosixPath(relative_path).is_absolute()
            or PureWindowsPath(relative_path).is_absolute()
        ):
            raise SecurityViolationError(
                f"File path must be relative: {relative_path!r}",
                details={"path": relative_path, "session_dir": str(session_dir)},
            )

        resolved = (session_dir / relative_path).resolve()
        if not is_descendant(resolved, session_dir):
            raise SecurityViolationError(
                f"Path traversal detected: {relative_path!r}",
                details={"path": relative_path, "session_dir": str(session_dir)},
            )
        return resolved

    async def prepare_files_for_mount(
        self,
        session_dir: str | Path | SandboxSession,
        files: Mapping[str, str | bytes],
        container_root: str | None = None,
    ) -> list[MountSpec]:
        """
        校验并写入文件，返回只读挂载描述

        先完成全部校验，任一文件不合法则不写入任何内容。

        Args:
            session_dir: 会话目录
            files: 相对路径 -> 文件内容
            container_root: 容器内根目录（默认 /workspace）

        Returns:
            每个文件对应一个只读 MountSpec

        Raises:
            SecurityViolationError: 路径穿越、绝对路径或扩展名不允许
            ResourceLimitError: 文件数量或大小超限
            FileSystemError: 路径重复或写入失败
        """
        root = self._resolve_session_dir(session_dir)
        container_root = container_root or self.container_root
        policy = self.file_policy

        if len(files) > policy.max_file_count:
            raise ResourceLimitError(
                f"Too many files: {len(files)} > {policy.max_file_count}",
                details={"count": len(files), "limit": policy.max_file_count},
            )

        # 第一遍：仅校验
        staged: list[tuple[Path, bytes, str]] = []
        seen: dict[Path, str] = {}
        for relative_path, content in files.items():
            target = self.resolve_relative(root, relative_path)
            # "a.py" 与 "./a.py" 指向同一文件，会产生重复挂载点
            if target in seen:
                raise FileSystemError(
                    f"Duplicate file path: {relative_path!r} and {seen[target]!r}",
                    details={"path": relative_path, "duplicate_of": seen[target]},
                )
            seen[target] = relative_path

            if not policy.is_extension_allowed(target.suffix):
                raise SecurityViolationError(
                    f"File extension not allowed: {relative_path!r}",
                    details={"path": relative_path, "extension": target.suffix},
                )

            data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
            if len(data) > policy.max_file_size_bytes:
                raise ResourceLimitError(
                    f"File too large: {relative_path!r} ({len(data)} bytes)",
                    details={
                        "path": relative_path,
                        "size": len(data),
                        "limit": policy.max_file_size_bytes,
                    },
                )

            container_path = posixpath.join(
                container_root, target.relative_to(root).as_posix()
            )
            staged.append((target, data, container_path))

        # 第二遍：写入
        def write_all() -> None:
            for target, data, _ in staged:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
                os.chmod(target, SOURCE_FILE_MODE)

        try:
            await asyncio.to_thread(write_all)
        except OSError as e:
            raise FileSystemError(
                f"Failed to write files for mount: {e}",
                details={"session_dir": str(root)},
                cause=e,
            ) from e

        logger.debug("Prepared %d file(s) in %s", len(staged), root)
        return [
            MountSpec(host_path=str(target), container_path=container_path, read_only=True)
            for target, _, container_path in staged
        ]

    async def create_output_dir(
        self,
        session_dir: str | Path | SandboxSession,
        name: str = "output",
        container_path: str | None = None,
    ) -> MountSpec:
        """
        创建可写的输出目录

        Returns:
            可写 MountSpec（默认挂载到 <container_root>/<name>）
        """
        root = self._resolve_session_dir(session_dir)
        target = self.resolve_relative(root, name)
        container_path = container_path or posixpath.join(
            self.container_root, target.relative_to(root).as_posix()
        )

        def create() -> None:
            target.mkdir(parents=True, exist_ok=True)
            os.chmod(target, OUTPUT_DIR_MODE)

        try:
            await asyncio.to_thread(create)
        except OSError as e:
            raise FileSystemError(
                f"Failed to create output directory: {e}",
                details={"path": str(target)},
                cause=e,
            ) from e

        return MountSpec(host_path=str(target), container_path=container_path, read_only=False)
