"""
容器生命周期管理单元测试
"""

import pytest

from sandbox_engine.config import ResourceLimits
from sandbox_engine.exceptions import (
    CommandExecutionError,
    ContainerCreationError,
    ResourceLimitError,
)
from sandbox_engine.sandbox.lifecycle import (
    CONTAINER_PREFIX,
    MANAGED_LABEL,
    OWNER_LABEL,
    ContainerLifecycleManager,
)
from sandbox_engine.sandbox.runtime import RuntimeAPIError
from sandbox_engine.sandbox.types import ContainerConfig, ContainerState, MountSpec


@pytest.fixture
def lifecycle(runtime, settings) -> ContainerLifecycleManager:
    return ContainerLifecycleManager(runtime, settings, owner_id="owner-1")


class TestCreateAndStart:
    """测试创建与启动"""

    @pytest.mark.asyncio
    async def test_hardening_applied(self, lifecycle, runtime):
        container_id = await lifecycle.create_and_start()

        request = runtime.created[0]
        assert request.image == "ubuntu:latest"
        assert request.network_mode == "none"
        assert request.user == "1000:1000"
        assert request.cap_drop == ["ALL"]
        assert request.security_opts == ["no-new-privileges"]
        assert request.read_only_root is True
        assert request.cpus == 0.5
        assert request.memory_bytes == 256 * 1024**2
        assert request.pids_limit == 256
        assert request.name.startswith(CONTAINER_PREFIX)
        assert request.labels[MANAGED_LABEL] == "true"
        assert request.labels[OWNER_LABEL] == "owner-1"
        assert request.entrypoint == "tail"
        assert request.command == ["-f", "/dev/null"]

        assert runtime.containers[container_id].status == "running"
        info = lifecycle.get(container_id)
        assert info is not None
        assert info.state == ContainerState.RUNNING
        assert container_id in lifecycle.containers

    @pytest.mark.asyncio
    async def test_config_overrides(self, lifecycle, runtime):
        mount = MountSpec(host_path="/tmp/sandbox/s/a.py", container_path="/workspace/a.py")
        await lifecycle.create_and_start(
            ContainerConfig(
                image="python:3.11-slim",
                resource_limits=ResourceLimits(cpus=1.5, memory="1g"),
                mounts=[mount],
                env={"FOO": "bar"},
                network_mode="bridge",
                labels={"team": "qa"},
            )
        )

        request = runtime.created[0]
        assert request.image == "python:3.11-slim"
        assert request.cpus == 1.5
        assert request.memory_bytes == 1024**3
        assert request.mounts == [mount]
        assert request.env == {"FOO": "bar"}
        assert request.network_mode == "bridge"
        assert request.labels["team"] == "qa"
        assert request.labels[MANAGED_LABEL] == "true"

    @pytest.mark.asyncio
    async def test_pulls_missing_image(self, lifecycle, runtime):
        await lifecycle.create_and_start(ContainerConfig(image="node:20-alpine"))
        assert runtime.pulled == ["node:20-alpine"]

    @pytest.mark.asyncio
    async def test_does_not_pull_present_image(self, lifecycle, runtime):
        await lifecycle.create_and_start()
        assert runtime.pulled == []

    @pytest.mark.asyncio
    async def test_pull_failure(self, lifecycle, runtime):
        runtime.fail_pull = "Error response from daemon: manifest unknown"
        with pytest.raises(ContainerCreationError) as exc_info:
            await lifecycle.create_and_start(ContainerConfig(image="missing:tag"))
        assert isinstance(exc_info.value.cause, RuntimeAPIError)
        assert len(lifecycle.containers) == 0

    @pytest.mark.asyncio
    async def test_create_failure(self, lifecycle, runtime):
        runtime.fail_create = "Conflict. The container name is already in use"
        with pytest.raises(ContainerCreationError) as exc_info:
            await lifecycle.create_and_start()
        assert "already in use" in exc_info.value.message
        assert len(lifecycle.containers) == 0

    @pytest.mark.asyncio
    async def test_start_failure_removes_container(self, lifecycle, runtime):
        runtime.fail_start = "OCI runtime create failed"

        with pytest.raises(ContainerCreationError):
            await lifecycle.create_and_start()

        assert runtime.containers == {}
        assert len(runtime.remove_calls) == 1
        assert len(lifecycle.containers) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "limits",
        [ResourceLimits(cpus=0), ResourceLimits(cpus=-1), ResourceLimits(memory="0")],
    )
    async def test_invalid_limits_rejected_before_runtime(self, lifecycle, runtime, limits):
        with pytest.raises(ResourceLimitError):
            await lifecycle.create_and_start(ContainerConfig(resource_limits=limits))
        assert runtime.created == []


class TestStatusStopRemove:
    """测试状态查询与停止/删除"""

    @pytest.mark.asyncio
    async def test_status(self, lifecycle, runtime):
        container_id = await lifecycle.create_and_start()
        assert await lifecycle.status(container_id) == ContainerState.RUNNING

        runtime.set_status(container_id, "exited")
        assert await lifecycle.status(container_id) == ContainerState.STOPPED
        assert lifecycle.get(container_id).state == ContainerState.STOPPED

    @pytest.mark.asyncio
    async def test_status_unknown(self, lifecycle):
        assert await lifecycle.status("does-not-exist") == ContainerState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_status_runtime_failure_is_typed(self, lifecycle, runtime):
        runtime.fail_inspect = "Cannot connect to the Docker daemon"

        with pytest.raises(CommandExecutionError) as exc_info:
            await lifecycle.status("abc")

        assert exc_info.value.details == {"container_id": "abc"}
        assert isinstance(exc_info.value.cause, RuntimeAPIError)

    @pytest.mark.asyncio
    async def test_stop_and_remove(self, lifecycle, runtime):
        container_id = await lifecycle.create_and_start()

        await lifecycle.stop(container_id)
        assert lifecycle.get(container_id).state == ContainerState.STOPPED

        await lifecycle.remove(container_id)
        assert container_id not in runtime.containers
        assert lifecycle.get(container_id).state == ContainerState.REMOVED

    @pytest.mark.asyncio
    async def test_stop_and_remove_missing_is_success(self, lifecycle):
        await lifecycle.stop("gone")
        await lifecycle.remove("gone")

    @pytest.mark.asyncio
    async def test_stop_not_running_is_success(self, lifecycle, runtime):
        container_id = await lifecycle.create_and_start()
        runtime.fail_stop = f"Container {container_id} is not running"
        await lifecycle.stop(container_id)

    @pytest.mark.asyncio
    async def test_stop_other_error_propagates(self, lifecycle, runtime):
        container_id = await lifecycle.create_and_start()
        runtime.fail_stop = "permission denied"
        with pytest.raises(RuntimeAPIError):
            await lifecycle.stop(container_id)


class TestFromRuntime:
    @pytest.mark.parametrize(
        ("status", "state"),
        [
            ("running", ContainerState.RUNNING),
            ("paused", ContainerState.RUNNING),
            ("created", ContainerState.CREATED),
            ("exited", ContainerState.STOPPED),
            ("dead", ContainerState.STOPPED),
            ("removing", ContainerState.REMOVED),
            ("", ContainerState.NOT_FOUND),
        ],
    )
    def test_mapping(self, status, state):
        assert ContainerState.from_runtime(status) == state
