"""
Container Lifecycle Manager - 容器生命周期管理

统一管理沙箱容器：
- 创建与启动（镜像检查/拉取、安全加固、资源限制）
- 状态查询
- 停止与删除（"已不存在" 视为成功）

安全策略在创建时无条件应用：无网络、非 root 用户、丢弃全部 capability、
只读根文件系统、始终设置资源配额。仅 ContainerConfig.network_mode 可显式覆盖网络。
"""

from __future__ import annotations

import uuid

from sandbox_engine.config.settings import SandboxSettings
from sandbox_engine.exceptions import (
    CommandExecutionError,
    ContainerCreationError,
    ResourceLimitError,
)
from sandbox_engine.sandbox.registry import ResourceRegistry
from sandbox_engine.sandbox.runtime import ContainerRuntime, CreateRequest, RuntimeAPIError
from sandbox_engine.sandbox.types import ContainerConfig, ContainerInfo, ContainerState
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)

# 容器名称前缀与标签，用于识别和清理
CONTAINER_PREFIX = "sandbox-"
MANAGED_LABEL = "sandbox-engine.managed"
OWNER_LABEL = "sandbox-engine.owner"


class ContainerLifecycleManager:
    """
    容器生命周期管理器

    独占持有活跃容器注册表，执行引擎与仓库操作仅通过容器 ID 引用容器。
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        settings: SandboxSettings,
        owner_id: str | None = None,
    ) -> None:
        """
        Args:
            runtime: 容器运行时
            settings: 沙箱配置
            owner_id: 管理器标识（写入容器标签，便于孤儿发现）
        """
        self.runtime = runtime
        self.settings = settings
        self.owner_id = owner_id or uuid.uuid4().hex[:12]
        self.containers: ResourceRegistry[ContainerInfo] = ResourceRegistry("container")

    def _build_request(self, config: ContainerConfig) -> tuple[CreateRequest, ContainerInfo]:
        """应用安全策略，生成创建参数"""
        limits = (config.resource_limits or self.settings.default_resource_limits).validated()
        if self.settings.pids_limit <= 0:
            raise ResourceLimitError(
                f"pids limit must be positive: {self.settings.pids_limit}",
                details={"pids_limit": self.settings.pids_limit},
            )

        image = config.image or self.settings.base_image
        name = f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:12]}"
        network_mode = config.network_mode or self.settings.default_network_mode
        labels = {
            **config.labels,
            MANAGED_LABEL: "true",
            OWNER_LABEL: self.owner_id,
        }

        request = CreateRequest(
            name=name,
            image=image,
            user=self.settings.container_user,
            network_mode=network_mode,
            cpus=limits.cpus,
            memory_bytes=limits.memory_bytes,
            pids_limit=self.settings.pids_limit,
            mounts=list(config.mounts),
            env=dict(config.env),
            labels=labels,
            workdir=config.workdir or self.settings.container_workdir,
            tmpfs_size=self.settings.tmpfs_size,
        )
        info = ContainerInfo(
            container_id="",
            name=name,
            image=image,
            resource_limits=limits,
            network_mode=network_mode,
            user=self.settings.container_user,
            mounts=list(config.mounts),
            labels=labels,
        )
        return request, info

    async def _ensure_image(self, image: str) -> None:
        """确保镜像存在，不存在时拉取"""
        if await self.runtime.image_exists(image):
            return
        await self.runtime.pull_image(image)

    async def create_and_start(self, config: ContainerConfig | None = None) -> str:
        """
        创建并启动容器

        Args:
            config: 容器配置（未指定的字段使用全局配置）

        Returns:
            container_id: 容器 ID

        Raises:
            ResourceLimitError: 资源配额非法
            ContainerCreationError: 运行时调用失败（携带原始异常）
        """
        config = config or ContainerConfig()
        request, info = self._build_request(config)

        try:
            await self._ensure_image(request.image)
            container_id = await self.runtime.create_container(request)
        except RuntimeAPIError as e:
            logger.error("Failed to create container from %s: %s", request.image, e)
            raise ContainerCreationError(
                f"Failed to create container: {e}",
                details={"image": request.image, "name": request.name},
                cause=e,
            ) from e

        info.container_id = container_id

        try:
            await self.runtime.start_container(container_id)
        except RuntimeAPIError as e:
            info.set_state(ContainerState.FAILED)
            logger.error("Failed to start container %s: %s", container_id, e)
            try:
                await self.runtime.remove_container(container_id)
            except RuntimeAPIError as remove_error:
                logger.warning(
                    "Failed to remove unstarted container %s: %s", container_id, remove_error
                )
            raise ContainerCreationError(
                f"Failed to start container: {e}",
                details={"container_id": container_id, "image": request.image},
                cause=e,
            ) from e

        info.set_state(ContainerState.RUNNING)
        self.containers.add(container_id, info)
        logger.info(
            "Container started: %s (name=%s, image=%s, network=%s)",
            container_id[:12],
            info.name,
            info.image,
            info.network_mode,
        )
        return container_id

    async def status(self, container_id: str) -> ContainerState:
        """
        查询容器运行时状态

        Raises:
            CommandExecutionError: 运行时无法检查容器（如守护进程不可达）
        """
        try:
            state = await self.runtime.inspect_container(container_id)
        except RuntimeAPIError as e:
            raise CommandExecutionError(
                f"Failed to inspect container: {e}",
                details={"container_id": container_id},
                cause=e,
            ) from e

        if state is None:
            result = ContainerState.NOT_FOUND
        else:
            result = ContainerState.from_runtime(str(state.get("Status", "")))

        info = self.containers.get(container_id)
        if info is not None and info.state != result and result != ContainerState.NOT_FOUND:
            info.set_state(result)
        return result

    async def stop(self, container_id: str) -> None:
        """停止容器（未运行或不存在视为成功）"""
        try:
            await self.runtime.stop_container(
                container_id, timeout_seconds=self.settings.stop_timeout_seconds
            )
        except RuntimeAPIError as e:
            if not (e.is_not_found or e.is_not_running):
                raise
            logger.debug("Container %s already stopped: %s", container_id, e)

        info = self.containers.get(container_id)
        if info is not None:
            info.set_state(ContainerState.STOPPED)

    async def remove(self, container_id: str) -> None:
        """删除容器（不存在视为成功）"""
        try:
            await self.runtime.remove_container(container_id)
        except RuntimeAPIError as e:
            if not e.is_not_found:
                raise
            logger.debug("Container %s already removed: %s", container_id, e)

        info = self.containers.get(container_id)
        if info is not None:
            info.set_state(ContainerState.REMOVED)

    def get(self, container_id: str) -> ContainerInfo | None:
        return self.containers.get(container_id)
