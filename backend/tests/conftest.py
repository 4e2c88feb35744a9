"""
Pytest Configuration - 测试配置

提供测试所需的 fixtures
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from sandbox_engine.config import SandboxSettings
from sandbox_engine.sandbox import SandboxManager
from tests.mocks.runtime_mock import FakeRuntime

BASE_IMAGE = "ubuntu:latest"
GIT_IMAGE = "alpine/git:latest"


@pytest.fixture
def sandbox_root(tmp_path: Path) -> Path:
    """临时根目录（所有会话目录都在其下）"""
    return tmp_path / "sandbox"


@pytest.fixture
def settings(sandbox_root: Path) -> SandboxSettings:
    """测试配置（不读取 .env）"""
    return SandboxSettings(
        _env_file=None,
        temp_host_dir=str(sandbox_root),
        base_image=BASE_IMAGE,
        git_image=GIT_IMAGE,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    """内存容器运行时（镜像已存在）"""
    return FakeRuntime(images={BASE_IMAGE, GIT_IMAGE})


@pytest_asyncio.fixture
async def manager(
    settings: SandboxSettings, runtime: FakeRuntime
) -> AsyncGenerator[SandboxManager, None]:
    """沙箱管理器（测试结束时清理全部资源）"""
    sandbox = SandboxManager(settings=settings, runtime=runtime, owner_id="test-owner")
    yield sandbox
    await sandbox.cleanup_all()
