"""
Sandbox Settings - 沙箱配置管理

使用 Pydantic Settings 管理配置，支持环境变量（前缀 SANDBOX_）和 .env 文件。
嵌套字段使用双下划线，例如 SANDBOX_DEFAULT_RESOURCE_LIMITS__MEMORY=512m
"""

from functools import lru_cache
import tempfile
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sandbox_engine.config.execution_config import FilePolicy, ResourceLimits


class SandboxSettings(BaseSettings):
    """沙箱配置"""

    model_config = SettingsConfigDict(
        env_prefix="SANDBOX_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # 容器配置
    # ========================================================================
    base_image: str = "ubuntu:latest"
    git_image: str = "alpine/git:latest"
    container_user: str = "1000:1000"
    container_workdir: str = "/workspace"
    default_network_mode: str = "none"
    # 仅用于仓库克隆容器（需要访问远程仓库）
    clone_network_mode: str = "bridge"
    default_resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    pids_limit: int = 256
    tmpfs_size: str = "64m"
    stop_timeout_seconds: int = 5
    docker_binary: str = "docker"

    # ========================================================================
    # 执行配置
    # ========================================================================
    command_timeout_ms: int = 30_000
    clone_timeout_ms: int = 120_000

    # ========================================================================
    # 文件桥接配置
    # ========================================================================
    temp_host_dir: str = Field(default_factory=lambda: f"{tempfile.gettempdir()}/sandbox")
    file_policy: FilePolicy = Field(default_factory=FilePolicy)

    # ========================================================================
    # 日志配置
    # ========================================================================
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"


@lru_cache
def get_settings() -> SandboxSettings:
    """获取配置单例"""
    return SandboxSettings()
