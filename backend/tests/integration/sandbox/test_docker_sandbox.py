"""
Docker 沙箱集成测试

需要可访问的 Docker 守护进程，否则跳过。
克隆测试另外需要网络，设置 SANDBOX_TEST_CLONE_URL 后运行。
"""

import asyncio
import json
import os
import shutil
import subprocess

import pytest
import pytest_asyncio

from sandbox_engine.config import SandboxSettings
from sandbox_engine.exceptions import CommandTimeoutError, SecurityViolationError
from sandbox_engine.sandbox import ContainerConfig, ContainerState, SandboxManager

PYTHON_IMAGE = os.getenv("SANDBOX_TEST_PYTHON_IMAGE", "python:3.11-slim")
CLONE_URL = os.getenv("SANDBOX_TEST_CLONE_URL")


def _docker_available() -> bool:
    if shutil.which("docker") is None:
        return False
    try:
        result = subprocess.run(
            ["docker", "info", "--format", "{{.ServerVersion}}"],
            capture_output=True,
            timeout=10,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not _docker_available(), reason="Docker daemon not reachable"),
]


def _inspect(container_id: str) -> dict:
    result = subprocess.run(
        ["docker", "inspect", container_id], capture_output=True, text=True, check=True
    )
    return json.loads(result.stdout)[0]


@pytest_asyncio.fixture
async def docker_manager(tmp_path):
    settings = SandboxSettings(
        _env_file=None,
        temp_host_dir=str(tmp_path / "sandbox"),
        base_image=PYTHON_IMAGE,
    )
    async with SandboxManager(settings=settings) as sandbox:
        yield sandbox


class TestDockerSandbox:
    """真实容器流程"""

    @pytest.mark.asyncio
    async def test_run_python_file(self, docker_manager):
        session = await docker_manager.create_session()
        mounts = await docker_manager.prepare_files(session, {"main.py": "print('ok')"})
        container_id = await docker_manager.create_and_start_container(
            ContainerConfig(mounts=mounts)
        )

        result = await docker_manager.execute_command(
            container_id, ["python", "-B", "/workspace/main.py"]
        )

        assert result.exit_code == 0
        assert result.output == "ok"

        assert await docker_manager.cleanup_container(container_id) is True
        assert await docker_manager.container_status(container_id) == ContainerState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_container_is_hardened(self, docker_manager):
        container_id = await docker_manager.create_and_start_container()

        host_config = _inspect(container_id)["HostConfig"]
        assert host_config["NetworkMode"] == "none"
        assert host_config["ReadonlyRootfs"] is True
        assert host_config["CapDrop"] == ["ALL"]
        assert host_config["Memory"] == 256 * 1024**2
        assert host_config["NanoCpus"] == 500_000_000

        whoami = await docker_manager.execute_command(container_id, ["id", "-u"])
        assert whoami.output == "1000"

        network = await docker_manager.execute_command(
            container_id,
            ["python", "-c", "import socket; socket.create_connection(('1.1.1.1', 53), 2)"],
        )
        assert network.exit_code != 0

    @pytest.mark.asyncio
    async def test_exit_code_and_stderr(self, docker_manager):
        container_id = await docker_manager.create_and_start_container()

        result = await docker_manager.execute_command(container_id, "echo err >&2; exit 7")

        assert result.exit_code == 7
        assert result.stdout == ""
        assert result.stderr == "err\n"

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, docker_manager):
        container_id = await docker_manager.create_and_start_container()

        with pytest.raises(CommandTimeoutError):
            await docker_manager.execute_command(container_id, ["sleep", "30"], timeout_ms=100)

        # 容器仍在运行，被终止的进程不再存在
        assert await docker_manager.container_status(container_id) == ContainerState.RUNNING
        procs = await docker_manager.execute_command(container_id, "cat /proc/[0-9]*/comm")
        assert "sleep" not in procs.stdout.split()

        assert await docker_manager.cleanup_container(container_id) is True

    @pytest.mark.asyncio
    async def test_output_dir_is_writable(self, docker_manager):
        session = await docker_manager.create_session()
        output = await docker_manager.create_output_dir(session)
        mounts = await docker_manager.prepare_files(session, {"input.txt": "data"})
        container_id = await docker_manager.create_and_start_container(
            ContainerConfig(mounts=[*mounts, output])
        )

        write_output = await docker_manager.execute_command(
            container_id, "cat /workspace/input.txt > /workspace/output/result.txt"
        )
        write_input = await docker_manager.execute_command(
            container_id, "echo x > /workspace/input.txt"
        )

        assert write_output.exit_code == 0
        assert write_input.exit_code != 0
        assert (session.host_path / "output" / "result.txt").read_text() == "data"

    @pytest.mark.asyncio
    async def test_concurrent_cleanup(self, docker_manager):
        ids = await asyncio.gather(
            docker_manager.create_and_start_container(),
            docker_manager.create_and_start_container(),
        )

        report = await docker_manager.cleanup_all()

        assert report.ok is True
        assert sorted(report.containers) == sorted(ids)
        for container_id in ids:
            assert await docker_manager.container_status(container_id) == ContainerState.NOT_FOUND


@pytest.mark.skipif(not CLONE_URL, reason="SANDBOX_TEST_CLONE_URL not set")
class TestDockerRepository:
    """真实仓库克隆（需要网络）"""

    @pytest.mark.asyncio
    async def test_clone_list_read(self, docker_manager):
        handle = await docker_manager.clone_repository(CLONE_URL)

        files = await docker_manager.list_repository_files(handle.container_id)
        assert files
        assert not any(f.startswith(".git/") for f in files)

        content = await docker_manager.read_repository_file(handle.container_id, files[0])
        assert isinstance(content, str)

        with pytest.raises(SecurityViolationError):
            await docker_manager.read_repository_file(
                handle.container_id, handle.clone_path + "/../secret"
            )

        assert await docker_manager.cleanup_container(handle.container_id) is True
        assert not handle.host_path.exists()
