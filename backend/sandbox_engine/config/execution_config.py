"""
执行环境配置模型

资源限制与挂载文件策略
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from sandbox_engine.exceptions import ResourceLimitError

_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmg]?)\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_memory_limit(limit: str | int) -> int:
    """
    解析内存限制为字节数

    Args:
        limit: "512m"、"1g"、"65536k" 或整数字节

    Returns:
        字节数

    Raises:
        ResourceLimitError: 格式非法或不是正数
    """
    if isinstance(limit, int):
        value = limit
    else:
        match = _MEMORY_PATTERN.match(limit)
        if not match:
            raise ResourceLimitError(
                f"Invalid memory limit format: {limit!r}",
                details={"memory": limit},
            )
        number, unit = match.groups()
        value = int(float(number) * _MEMORY_UNITS[unit.lower()])

    if value <= 0:
        raise ResourceLimitError(
            f"Memory limit must be positive: {limit!r}",
            details={"memory": limit},
        )
    return value


class ResourceLimits(BaseModel):
    """资源限制配置（始终设置，不允许 "无限制"）"""

    cpus: float = 0.5
    memory: str = "256m"

    @property
    def memory_bytes(self) -> int:
        return parse_memory_limit(self.memory)

    def validated(self) -> ResourceLimits:
        """校验配额，非法时抛出 ResourceLimitError"""
        if self.cpus <= 0:
            raise ResourceLimitError(
                f"CPU quota must be positive: {self.cpus}",
                details={"cpus": self.cpus},
            )
        parse_memory_limit(self.memory)
        return self


class FilePolicy(BaseModel):
    """挂载文件策略"""

    # 为空表示不限制扩展名（仍受黑名单约束）
    allowed_extensions: list[str] = Field(default_factory=list)
    blocked_extensions: list[str] = Field(
        default_factory=lambda: [".exe", ".dll", ".so", ".dylib", ".bin"]
    )
    max_file_size_bytes: int = 5 * 1024 * 1024
    max_file_count: int = 500

    def is_extension_allowed(self, suffix: str) -> bool:
        suffix = suffix.lower()
        if suffix in {ext.lower() for ext in self.blocked_extensions}:
            return False
        if self.allowed_extensions:
            return suffix in {ext.lower() for ext in self.allowed_extensions}
        return True
