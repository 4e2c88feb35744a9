"""
Resource Reclaimer - 资源回收

幂等地清理容器、仓库与会话目录：
- 单个清理失败只记录日志，不向上抛出
- 批量清理为尽力而为，单项失败不会中断其余清理
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from sandbox_engine.exceptions import SandboxError, SecurityViolationError
from sandbox_engine.sandbox.file_bridge import FileBridge
from sandbox_engine.sandbox.lifecycle import ContainerLifecycleManager
from sandbox_engine.sandbox.registry import ResourceRegistry
from sandbox_engine.sandbox.runtime import RuntimeAPIError
from sandbox_engine.sandbox.types import RepositoryHandle
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    """批量清理结果"""

    containers: list[str] = field(default_factory=list)
    sessions: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ResourceReclaimer:
    """
    资源回收器

    持有仓库注册表（按容器 ID 索引），容器与会话注册表分别由
    生命周期管理器和文件桥接器持有。
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        file_bridge: FileBridge,
        repositories: ResourceRegistry[RepositoryHandle] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.file_bridge = file_bridge
        self.repositories: ResourceRegistry[RepositoryHandle] = (
            repositories if repositories is not None else ResourceRegistry("repository")
        )

    async def _reclaim_container(self, container_id: str) -> list[str]:
        """清理单个容器，返回失败信息列表（不抛出异常）"""
        errors: list[str] = []

        try:
            await self.lifecycle.stop(container_id)
        except (RuntimeAPIError, SandboxError) as e:
            logger.warning("Failed to stop container %s: %s", container_id, e)
            errors.append(f"stop: {e}")

        try:
            await self.lifecycle.remove(container_id)
        except (RuntimeAPIError, SandboxError) as e:
            logger.warning("Failed to remove container %s: %s", container_id, e)
            errors.append(f"remove: {e}")

        # 无论运行时清理是否成功，都从注册表移除
        self.lifecycle.containers.pop(container_id)

        handle = self.repositories.pop(container_id)
        if handle is not None:
            try:
                await self.file_bridge.cleanup_session_dir(handle.host_path)
            except SandboxError as e:
                logger.warning("Failed to remove repository dir %s: %s", handle.host_path, e)
                errors.append(f"repository: {e}")

        return errors

    async def cleanup_container(self, container_id: str) -> bool:
        """
        清理容器（可重复调用，第二次调用为空操作）

        Returns:
            是否完全清理成功
        """
        errors = await self._reclaim_container(container_id)
        if errors:
            logger.warning("Container %s cleaned up with errors: %s", container_id, errors)
            return False
        logger.info("Container cleaned up: %s", container_id[:12])
        return True

    async def cleanup_session(self, host_path: str) -> bool:
        """清理会话目录（删除失败只记录日志，越界路径仍然抛出）"""
        try:
            await self.file_bridge.cleanup_session_dir(host_path)
        except SecurityViolationError:
            raise
        except SandboxError as e:
            logger.warning("Failed to remove session dir %s: %s", host_path, e)
            return False
        return True

    async def cleanup_all(self) -> CleanupReport:
        """
        清理所有已登记的资源

        先并发清理全部容器（连同其仓库目录），再清理剩余会话目录。
        """
        report = CleanupReport()

        container_ids = self.lifecycle.containers.keys()
        container_results = await asyncio.gather(
            *(self._reclaim_container(cid) for cid in container_ids),
            return_exceptions=True,
        )
        for container_id, outcome in zip(container_ids, container_results, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Unexpected error cleaning container %s: %s", container_id, outcome)
                report.failed[container_id] = str(outcome)
            elif outcome:
                report.failed[container_id] = "; ".join(outcome)
            else:
                report.containers.append(container_id)

        sessions = self.file_bridge.sessions.snapshot()
        session_results = await asyncio.gather(
            *(self.file_bridge.cleanup_session_dir(s.host_path) for s in sessions.values()),
            return_exceptions=True,
        )
        for session_id, outcome in zip(sessions, session_results, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Failed to remove session %s: %s", session_id, outcome)
                report.failed[session_id] = str(outcome)
            else:
                report.sessions.append(session_id)

        logger.info(
            "Cleanup sweep finished: %d container(s), %d session(s), %d failure(s)",
            len(report.containers),
            len(report.sessions),
            len(report.failed),
        )
        return report
