"""
Sandbox - 沙箱执行系统

在隔离容器中执行不受信任的代码，提供文件注入、命令执行与仓库检查能力
"""

from sandbox_engine.sandbox.cleanup import CleanupReport, ResourceReclaimer
from sandbox_engine.sandbox.executor import CommandExecutor
from sandbox_engine.sandbox.file_bridge import FileBridge
from sandbox_engine.sandbox.lifecycle import ContainerLifecycleManager
from sandbox_engine.sandbox.manager import SandboxManager
from sandbox_engine.sandbox.repository import RepositoryOperations
from sandbox_engine.sandbox.runtime import ContainerRuntime, DockerCLIRuntime, RuntimeAPIError
from sandbox_engine.sandbox.tools import SandboxTool, get_tool, list_tools, register_tool
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

__all__ = [
    "CleanupReport",
    "CommandExecutor",
    "ContainerConfig",
    "ContainerInfo",
    "ContainerLifecycleManager",
    "ContainerRuntime",
    "ContainerState",
    "DockerCLIRuntime",
    "ExecutionRequest",
    "ExecutionResult",
    "FileBridge",
    "MountSpec",
    "RepositoryHandle",
    "RepositoryOperations",
    "ResourceReclaimer",
    "RuntimeAPIError",
    "SandboxManager",
    "SandboxSession",
    "SandboxTool",
    "get_tool",
    "list_tools",
    "register_tool",
]
