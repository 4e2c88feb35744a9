"""
Exceptions - 沙箱异常类

提供统一的异常层次结构，便于编排层区分 "修正输入后重试" 与 "中止并上报"。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    """错误严重性"""

    TRANSIENT = "TRANSIENT"  # 临时故障，可原样重试
    RECOVERABLE_WITH_MODIFICATION = "RECOVERABLE_WITH_MODIFICATION"  # 修改参数后重试
    CRITICAL = "CRITICAL"  # 严重错误，需要上报
    FATAL = "FATAL"  # 致命错误（安全问题），立即中止


class SuggestedAction(str, Enum):
    """建议的恢复动作"""

    RETRY_AS_IS = "RETRY_SUBTASK_AS_IS"
    RETRY_MODIFIED = "RETRY_SUBTASK_MODIFIED"
    ESCALATE = "ESCALATE"
    HALT = "HALT"


class SandboxError(Exception):
    """沙箱基础异常

    所有沙箱异常的基类。

    Attributes:
        message: 错误消息
        code: 错误代码
        details: 结构化上下文（容器 ID、路径、命令等）
        cause: 原始异常（可选）
        severity: 严重性
    """

    default_code: str = "SANDBOX_GENERIC"
    default_severity: ErrorSeverity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        code: str | None = None,
        severity: ErrorSeverity | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause
        self.severity = severity or self.default_severity
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """转换为可记录的字典"""
        data: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "details": self.details,
        }
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data


class ContainerCreationError(SandboxError):
    """容器创建或启动失败（镜像缺失、资源耗尽、配置非法等）"""

    default_code = "CONTAINER_CREATION_ERROR"


class CommandExecutionError(SandboxError):
    """命令执行失败

    容器不存在/未运行、运行时 exec 失败，或仓库操作的命令返回非零退出码。
    """

    default_code = "COMMAND_EXECUTION_ERROR"


class CommandTimeoutError(SandboxError):
    """命令超时（命令级失败，容器保持运行且可清理）"""

    default_code = "COMMAND_TIMEOUT_ERROR"
    default_severity = ErrorSeverity.RECOVERABLE_WITH_MODIFICATION


class FileSystemError(SandboxError):
    """主机或容器内的文件系统操作失败"""

    default_code = "FILE_SYSTEM_ERROR"


class SecurityViolationError(SandboxError):
    """安全违规：路径越界、非安全传输协议等"""

    default_code = "SECURITY_VIOLATION_ERROR"
    default_severity = ErrorSeverity.FATAL


class ResourceLimitError(SandboxError):
    """资源限制错误：文件过大、数量超限、配额非法"""

    default_code = "RESOURCE_LIMIT_ERROR"
    default_severity = ErrorSeverity.RECOVERABLE_WITH_MODIFICATION


@dataclass
class ErrorClassification:
    """错误分类结果（供编排层决策）"""

    severity: ErrorSeverity
    is_retryable: bool
    suggested_action: SuggestedAction
    details: str
    context: dict[str, Any] = field(default_factory=dict)


_ACTIONS: dict[ErrorSeverity, SuggestedAction] = {
    ErrorSeverity.TRANSIENT: SuggestedAction.RETRY_AS_IS,
    ErrorSeverity.RECOVERABLE_WITH_MODIFICATION: SuggestedAction.RETRY_MODIFIED,
    ErrorSeverity.CRITICAL: SuggestedAction.ESCALATE,
    ErrorSeverity.FATAL: SuggestedAction.HALT,
}


def classify_error(error: BaseException) -> ErrorClassification:
    """
    对异常进行分类

    Args:
        error: 任意异常

    Returns:
        ErrorClassification: 严重性、是否可重试、建议动作
    """
    if isinstance(error, SandboxError):
        severity = error.severity
        if isinstance(error, SecurityViolationError):
            text = f"Security violation: {error.message}"
        else:
            text = error.message
        return ErrorClassification(
            severity=severity,
            is_retryable=severity
            in (ErrorSeverity.TRANSIENT, ErrorSeverity.RECOVERABLE_WITH_MODIFICATION),
            suggested_action=_ACTIONS[severity],
            details=text,
            context=dict(error.details),
        )

    # 非沙箱异常一律视为严重错误
    return ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        suggested_action=SuggestedAction.ESCALATE,
        details=f"{type(error).__name__}: {error}",
    )
