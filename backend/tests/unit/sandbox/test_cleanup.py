"""
资源回收单元测试

测试清理的幂等性、失败容忍与批量清理
"""

import asyncio

import pytest

from sandbox_engine.exceptions import CommandTimeoutError, SecurityViolationError
from sandbox_engine.sandbox import SandboxManager
from sandbox_engine.sandbox.runtime import RuntimeAPIError
from tests.mocks.runtime_mock import ExecResponse, FakeRuntime


class TestCleanupContainer:
    """测试单个容器清理"""

    @pytest.mark.asyncio
    async def test_cleanup_container(self, manager, runtime):
        container_id = await manager.create_and_start_container()

        assert await manager.cleanup_container(container_id) is True

        assert container_id not in runtime.containers
        assert container_id not in manager.active_containers
        assert runtime.stop_calls == [container_id]
        assert runtime.remove_calls == [container_id]

    @pytest.mark.asyncio
    async def test_cleanup_twice_is_noop(self, manager, runtime):
        container_id = await manager.create_and_start_container()

        assert await manager.cleanup_container(container_id) is True
        assert await manager.cleanup_container(container_id) is True

        assert manager.active_containers == {}

    @pytest.mark.asyncio
    async def test_concurrent_cleanup_of_two_containers(self, manager):
        first, second, third = await asyncio.gather(
            manager.create_and_start_container(),
            manager.create_and_start_container(),
            manager.create_and_start_container(),
        )
        before = len(manager.active_containers)

        results = await asyncio.gather(
            manager.cleanup_container(first), manager.cleanup_container(second)
        )

        assert results == [True, True]
        assert len(manager.active_containers) == before - 2
        assert list(manager.active_containers) == [third]

    @pytest.mark.asyncio
    async def test_cleanup_vanished_container(self, manager, runtime):
        container_id = await manager.create_and_start_container()
        runtime.vanish(container_id)

        assert await manager.cleanup_container(container_id) is True
        assert manager.active_containers == {}

    @pytest.mark.asyncio
    async def test_cleanup_stopped_container(self, manager, runtime):
        container_id = await manager.create_and_start_container()
        runtime.set_status(container_id, "exited")
        runtime.fail_stop = f"Container {container_id} is not running"

        assert await manager.cleanup_container(container_id) is True
        assert container_id not in runtime.containers

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, manager, runtime, caplog):
        container_id = await manager.create_and_start_container()
        runtime.fail_stop = "permission denied"
        runtime.fail_remove = "permission denied"

        with caplog.at_level("WARNING", logger="sandbox_engine"):
            assert await manager.cleanup_container(container_id) is False

        # 即使运行时清理失败也从注册表移除
        assert container_id not in manager.active_containers
        assert "permission denied" in caplog.text

    @pytest.mark.asyncio
    async def test_cleanup_after_timeout(self, manager, runtime):
        runtime.exec_handler = lambda container, argv: ExecResponse(delay=10)
        container_id = await manager.create_and_start_container()
        with pytest.raises(CommandTimeoutError):
            await manager.execute_command(container_id, ["sleep", "10"], timeout_ms=100)

        assert await manager.cleanup_container(container_id) is True
        assert runtime.containers == {}


class TestCleanupSession:
    """测试会话目录清理"""

    @pytest.mark.asyncio
    async def test_cleanup_session(self, manager):
        session = await manager.create_session()
        await manager.prepare_files(session, {"main.py": "print('ok')"})

        assert await manager.cleanup_session_dir(session.host_path) is True
        assert not session.host_path.exists()
        assert manager.active_sessions == {}

    @pytest.mark.asyncio
    async def test_cleanup_session_twice(self, manager):
        session = await manager.create_session()
        assert await manager.cleanup_session_dir(session.host_path) is True
        assert await manager.cleanup_session_dir(session.host_path) is True

    @pytest.mark.asyncio
    async def test_cleanup_outside_root_raises(self, manager, tmp_path):
        victim = tmp_path / "important"
        victim.mkdir()

        with pytest.raises(SecurityViolationError):
            await manager.cleanup_session_dir(victim)
        assert victim.exists()


class FlakyRemoveRuntime(FakeRuntime):
    """第一个删除请求失败，且删除过程有延迟（用于观察并发）"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_id: str | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def remove_container(self, container_id: str) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.05)
            if container_id == self.failing_id:
                raise RuntimeAPIError("device or resource busy", 1, "device or resource busy")
            await super().remove_container(container_id)
        finally:
            self.in_flight -= 1


class TestCleanupAll:
    """测试批量清理"""

    @pytest.mark.asyncio
    async def test_cleanup_all(self, manager, runtime, sandbox_root):
        first = await manager.create_and_start_container()
        second = await manager.create_and_start_container()
        session = await manager.create_session()
        await manager.prepare_files(session, {"a.txt": "a"})

        report = await manager.cleanup_all()

        assert report.ok is True
        assert sorted(report.containers) == sorted([first, second])
        assert report.sessions == [session.session_id]
        assert runtime.containers == {}
        assert manager.active_containers == {}
        assert manager.active_sessions == {}
        assert list(sandbox_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cleanup_all_is_concurrent_and_tolerant(self, settings):
        runtime = FlakyRemoveRuntime(images={settings.base_image})
        manager = SandboxManager(settings=settings, runtime=runtime)
        first = await manager.create_and_start_container()
        second = await manager.create_and_start_container()
        runtime.failing_id = first

        report = await manager.cleanup_all()

        assert runtime.max_in_flight == 2
        assert report.ok is False
        assert first in report.failed
        assert report.containers == [second]
        assert second not in runtime.containers
        # 失败的容器同样从注册表移除
        assert manager.active_containers == {}

    @pytest.mark.asyncio
    async def test_cleanup_all_empty(self, manager):
        report = await manager.cleanup_all()
        assert report.ok is True
        assert report.containers == []
        assert report.sessions == []

    @pytest.mark.asyncio
    async def test_context_manager(self, settings, runtime):
        async with SandboxManager(settings=settings, runtime=runtime) as sandbox:
            container_id = await sandbox.create_and_start_container()
            session = await sandbox.create_session()

        assert container_id not in runtime.containers
        assert not session.host_path.exists()
        assert sandbox.active_containers == {}

    @pytest.mark.asyncio
    async def test_context_manager_cleans_up_on_error(self, settings, runtime):
        with pytest.raises(RuntimeError):
            async with SandboxManager(settings=settings, runtime=runtime) as sandbox:
                await sandbox.create_and_start_container()
                raise RuntimeError("orchestrator failed")

        assert runtime.containers == {}
