"""
Sandbox Engine - 沙箱执行引擎

为上层编排器提供隔离的代码执行环境
"""

from sandbox_engine.config import SandboxSettings, get_settings
from sandbox_engine.exceptions import (
    CommandExecutionError,
    CommandTimeoutError,
    ContainerCreationError,
    FileSystemError,
    ResourceLimitError,
    SandboxError,
    SecurityViolationError,
    classify_error,
)
from sandbox_engine.sandbox import (
    ContainerConfig,
    ExecutionRequest,
    ExecutionResult,
    SandboxManager,
)

__version__ = "0.1.0"

__all__ = [
    "CommandExecutionError",
    "CommandTimeoutError",
    "ContainerConfig",
    "ContainerCreationError",
    "ExecutionRequest",
    "ExecutionResult",
    "FileSystemError",
    "ResourceLimitError",
    "SandboxError",
    "SandboxManager",
    "SandboxSettings",
    "SecurityViolationError",
    "classify_error",
    "get_settings",
]
