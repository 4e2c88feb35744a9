"""
Config - 沙箱配置

- settings: 进程级配置（环境变量 / .env）
- execution_config: 资源限制与文件策略模型
- validators: 配置验证
"""

from sandbox_engine.config.execution_config import FilePolicy, ResourceLimits, parse_memory_limit
from sandbox_engine.config.settings import SandboxSettings, get_settings
from sandbox_engine.config.validators import SandboxValidator, ValidationResult

__all__ = [
    "FilePolicy",
    "ResourceLimits",
    "SandboxSettings",
    "SandboxValidator",
    "ValidationResult",
    "get_settings",
    "parse_memory_limit",
]
