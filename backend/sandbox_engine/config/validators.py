"""
沙箱配置验证器
"""

from dataclasses import dataclass, field

from sandbox_engine.config.settings import SandboxSettings
from sandbox_engine.exceptions import ResourceLimitError


@dataclass
class ValidationResult:
    """验证结果"""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """合并两个验证结果"""
        return ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


class SandboxValidator:
    """沙箱配置验证器"""

    def validate(self, settings: SandboxSettings) -> ValidationResult:
        """验证沙箱配置"""
        errors: list[str] = []
        warnings: list[str] = []

        if not settings.base_image:
            errors.append("'base_image' must be specified")

        # 资源配额必须始终有效
        try:
            settings.default_resource_limits.validated()
        except ResourceLimitError as e:
            errors.append(e.message)

        if settings.pids_limit <= 0:
            errors.append("'pids_limit' must be positive")

        # 用户身份检查
        user = settings.container_user.split(":", 1)[0]
        if user in ("", "0", "root"):
            errors.append("'container_user' must be a non-root identity")

        # 网络配置警告
        if settings.default_network_mode != "none":
            warnings.append(
                f"default_network_mode is '{settings.default_network_mode}' - "
                "sandboxed code will have network access"
            )

        if settings.command_timeout_ms < 1:
            errors.append("'command_timeout_ms' must be at least 1")
        if settings.command_timeout_ms > 3_600_000:
            warnings.append("'command_timeout_ms' > 1 hour may cause issues")

        policy = settings.file_policy
        if policy.max_file_count < 1:
            errors.append("'file_policy.max_file_count' must be at least 1")
        if policy.max_file_size_bytes < 1:
            errors.append("'file_policy.max_file_size_bytes' must be at least 1")
        overlap = {e.lower() for e in policy.allowed_extensions} & {
            e.lower() for e in policy.blocked_extensions
        }
        if overlap:
            warnings.append(
                f"Extensions both allowed and blocked (blocked wins): {sorted(overlap)}"
            )

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )
