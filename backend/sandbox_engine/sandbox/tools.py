"""
Sandbox Tools - 沙箱内置工具

常用测试运行器与代码检查工具的命令模板，按名称注册，便于编排层选择。
工具只负责构造命令，执行仍然走 CommandExecutor（同样的超时与隔离策略）。
"""

from abc import ABC, abstractmethod
from typing import ClassVar

from sandbox_engine.exceptions import SandboxError
from sandbox_engine.sandbox.executor import CommandExecutor
from sandbox_engine.sandbox.types import ExecutionResult


class SandboxTool(ABC):
    """
    工具基类

    子类覆盖 name / description 并实现 build_command
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    language: ClassVar[str] = ""

    @abstractmethod
    def build_command(self, workdir: str) -> list[str]:
        """构造在 workdir 下执行的 argv"""
        raise NotImplementedError

    async def run(
        self,
        executor: CommandExecutor,
        container_id: str,
        workdir: str,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """在容器内执行工具，退出码原样返回"""
        return await executor.execute(
            container_id,
            self.build_command(workdir),
            timeout_ms=timeout_ms,
            cwd=workdir,
        )


# 工具注册表
tool_registry: dict[str, type[SandboxTool]] = {}


def register_tool(cls: type[SandboxTool]) -> type[SandboxTool]:
    """工具注册装饰器"""
    tool_registry[cls.name] = cls
    return cls


def get_tool(name: str) -> SandboxTool:
    """
    按名称获取工具实例

    Raises:
        SandboxError: 工具未注册（code=TOOL_NOT_FOUND）
    """
    tool_cls = tool_registry.get(name)
    if tool_cls is None:
        raise SandboxError(
            f"Unknown sandbox tool: {name}",
            details={"tool": name, "available": sorted(tool_registry)},
            code="TOOL_NOT_FOUND",
        )
    return tool_cls()


def list_tools() -> list[str]:
    return sorted(tool_registry)


# =============================================================================
# Python
# =============================================================================


@register_tool
class PytestTool(SandboxTool):
    name = "pytest"
    description = "Run the Python test suite with pytest"
    language = "python"

    def build_command(self, workdir: str) -> list[str]:
        # 只读根文件系统下禁止写缓存
        return ["python", "-m", "pytest", "-q", "-p", "no:cacheprovider", workdir]


@register_tool
class RuffTool(SandboxTool):
    name = "ruff"
    description = "Lint Python sources with ruff"
    language = "python"

    def build_command(self, workdir: str) -> list[str]:
        return ["ruff", "check", "--no-cache", "--output-format", "concise", workdir]


@register_tool
class Flake8Tool(SandboxTool):
    name = "flake8"
    description = "Lint Python sources with flake8"
    language = "python"

    def build_command(self, workdir: str) -> list[str]:
        return ["python", "-m", "flake8", workdir]


# =============================================================================
# JavaScript
# =============================================================================


@register_tool
class ESLintTool(SandboxTool):
    name = "eslint"
    description = "Lint JavaScript sources with eslint"
    language = "javascript"

    def build_command(self, workdir: str) -> list[str]:
        return ["npx", "--no-install", "eslint", "--no-color", workdir]


@register_tool
class JestTool(SandboxTool):
    name = "jest"
    description = "Run the JavaScript test suite with jest"
    language = "javascript"

    def build_command(self, workdir: str) -> list[str]:
        return ["npx", "--no-install", "jest", "--ci", "--rootDir", workdir]


@register_tool
class NpmTestTool(SandboxTool):
    name = "npm-test"
    description = "Run the project's npm test script"
    language = "javascript"

    def build_command(self, workdir: str) -> list[str]:
        return ["npm", "test", "--prefix", workdir, "--silent"]
