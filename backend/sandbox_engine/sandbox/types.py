"""
Sandbox Types - 沙箱共享类型

避免循环导入问题，将共享类型放在独立模块中。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from sandbox_engine.config.execution_config import ResourceLimits


class ContainerState(str, Enum):
    """容器状态"""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"
    FAILED = "failed"  # 启动失败（终态）
    NOT_FOUND = "not_found"  # 运行时中不存在

    @classmethod
    def from_runtime(cls, status: str) -> ContainerState:
        """将运行时状态字符串映射为容器状态"""
        status = status.lower()
        if status in ("running", "paused", "restarting"):
            return cls.RUNNING
        if status == "created":
            return cls.CREATED
        if status in ("exited", "dead"):
            return cls.STOPPED
        if status == "removing":
            return cls.REMOVED
        return cls.NOT_FOUND


class MountSpec(BaseModel):
    """挂载描述（源文件默认只读）"""

    model_config = ConfigDict(frozen=True)

    host_path: str
    container_path: str
    read_only: bool = True

    def to_volume(self) -> str:
        """转换为 docker -v 参数格式"""
        mode = "ro" if self.read_only else "rw"
        return f"{self.host_path}:{self.container_path}:{mode}"


class ContainerConfig(BaseModel):
    """单次容器创建请求

    未指定的字段使用全局配置。network_mode 仅在显式覆盖安全策略时设置。
    """

    image: str | None = None
    resource_limits: ResourceLimits | None = None
    mounts: list[MountSpec] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    workdir: str | None = None
    network_mode: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class ExecutionRequest(BaseModel):
    """执行请求

    command 为 argv 序列，或由 sh -c 执行的字符串；timeout_ms 为空时使用默认超时。
    """

    container_id: str
    command: str | list[str]
    env: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, gt=0)
    cwd: str | None = None


class ExecutionResult(BaseModel):
    """执行结果

    exit_code 为进程原始退出码，是否成功由调用方判断。
    """

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def output(self) -> str:
        """标准输出去掉末尾的一个换行符"""
        out = self.stdout
        if out.endswith("\n"):
            out = out[:-1]
            if out.endswith("\r"):
                out = out[:-1]
        return out

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class SandboxSession:
    """会话信息（主机侧临时目录）"""

    session_id: str
    host_path: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ContainerInfo:
    """容器信息"""

    container_id: str
    name: str
    image: str
    resource_limits: ResourceLimits
    network_mode: str
    user: str
    mounts: list[MountSpec] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    state: ContainerState = ContainerState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state_changed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def set_state(self, state: ContainerState) -> None:
        """设置状态"""
        self.state = state
        self.state_changed_at = datetime.now(UTC)


@dataclass
class RepositoryHandle:
    """已克隆仓库的句柄

    host_path 为会话临时目录，clone_host_path 为其中绑定挂载到容器 clone_path 的目录。
    """

    url: str
    host_path: Path
    clone_host_path: Path
    clone_path: str
    container_id: str
    ref: str
    session_id: str
