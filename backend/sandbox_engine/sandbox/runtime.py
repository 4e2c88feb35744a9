"""
Container Runtime - 容器运行时适配层

通过 Docker CLI 子进程操作容器：
- 镜像检查与拉取
- 容器创建 / 启动 / 检查 / 停止 / 删除
- exec 执行（记录容器内 pid，超时时可强制终止）

引擎只依赖 ContainerRuntime 协议，测试中可注入内存实现。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any, Protocol
import uuid

from sandbox_engine.sandbox.types import MountSpec
from sandbox_engine.utils.logging import get_logger

logger = get_logger(__name__)

# 运行时 "对象不存在" / "未运行" 的错误特征
_NOT_FOUND_MARKERS = ("no such container", "no such object", "no such image")
_NOT_RUNNING_MARKERS = ("is not running", "not running")

# 在容器内记录 exec 进程 pid 后再 exec 目标命令（$0 为 pid 文件路径）
_EXEC_WRAPPER = '{ echo $$ > "$0"; } 2>/dev/null; exec "$@"'
_KILL_WRAPPER = 'kill -9 "$(cat "$0")" 2>/dev/null; rm -f "$0"'


class RuntimeAPIError(Exception):
    """容器运行时调用失败"""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    @property
    def is_not_found(self) -> bool:
        text = f"{self} {self.stderr}".lower()
        return any(marker in text for marker in _NOT_FOUND_MARKERS)

    @property
    def is_not_running(self) -> bool:
        text = f"{self} {self.stderr}".lower()
        return any(marker in text for marker in _NOT_RUNNING_MARKERS)


@dataclass
class CreateRequest:
    """容器创建参数（已应用安全策略）"""

    name: str
    image: str
    user: str
    network_mode: str
    cpus: float
    memory_bytes: int
    pids_limit: int
    mounts: list[MountSpec] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    workdir: str | None = None
    read_only_root: bool = True
    tmpfs_size: str = "64m"
    cap_drop: list[str] = field(default_factory=lambda: ["ALL"])
    security_opts: list[str] = field(default_factory=lambda: ["no-new-privileges"])
    entrypoint: str = "tail"
    command: list[str] = field(default_factory=lambda: ["-f", "/dev/null"])


class ExecProcess(Protocol):
    """正在运行的 exec 进程"""

    @property
    def returncode(self) -> int | None: ...

    async def communicate(self) -> tuple[bytes, bytes]:
        """等待进程结束并返回 (stdout, stderr)"""
        ...

    async def terminate(self) -> None:
        """强制终止容器内进程"""
        ...


class ContainerRuntime(Protocol):
    """容器运行时协议"""

    async def image_exists(self, image: str) -> bool: ...

    async def pull_image(self, image: str) -> None: ...

    async def create_container(self, request: CreateRequest) -> str: ...

    async def start_container(self, container_id: str) -> None: ...

    async def inspect_container(self, container_id: str) -> dict[str, Any] | None:
        """返回容器 State 字典，不存在时返回 None"""
        ...

    async def stop_container(self, container_id: str, timeout_seconds: int = 5) -> None: ...

    async def remove_container(self, container_id: str) -> None: ...

    async def exec_start(
        self,
        container_id: str,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        user: str | None = None,
    ) -> ExecProcess: ...

    async def list_containers(self, labels: dict[str, str]) -> list[dict[str, str]]: ...


@dataclass
class CommandOutput:
    """CLI 调用结果"""

    returncode: int
    stdout: str
    stderr: str


class DockerExecProcess:
    """docker exec 子进程包装"""

    def __init__(
        self,
        runtime: DockerCLIRuntime,
        process: asyncio.subprocess.Process,
        container_id: str,
        pid_file: str,
        user: str | None,
    ) -> None:
        self._runtime = runtime
        self._process = process
        self._container_id = container_id
        self._pid_file = pid_file
        self._user = user

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        stdout, stderr = await self._process.communicate()
        # docker 客户端自身的错误（容器消失等）与命令退出码共用返回值，这里区分出来
        if (
            self._process.returncode
            and not stdout
            and stderr.startswith(b"Error response from daemon")
        ):
            message = stderr.decode("utf-8", errors="replace").strip()
            raise RuntimeAPIError(message, self._process.returncode, message)
        await self._remove_pid_file()
        return stdout, stderr

    def _exec_args(self, *argv: str) -> list[str]:
        cmd = ["exec"]
        if self._user:
            cmd.extend(["--user", self._user])
        cmd.extend([self._container_id, *argv])
        return cmd

    async def _remove_pid_file(self) -> None:
        # pid 文件位于容量受限的 /tmp tmpfs，正常结束后也要删除
        try:
            await self._runtime.run(*self._exec_args("rm", "-f", self._pid_file), check=False)
        except RuntimeAPIError as e:
            logger.warning("Failed to remove exec pid file in %s: %s", self._container_id[:12], e)

    async def terminate(self) -> None:
        cmd = self._exec_args("sh", "-c", _KILL_WRAPPER, self._pid_file)
        try:
            await self._runtime.run(*cmd, check=False)
        finally:
            if self._process.returncode is None:
                self._process.kill()
            await self._process.wait()


class DockerCLIRuntime:
    """
    Docker CLI 运行时

    所有调用均为 asyncio 子进程，不阻塞事件循环。
    """

    def __init__(self, docker_binary: str = "docker") -> None:
        self.docker_binary = docker_binary

    async def run(self, *args: str, check: bool = True) -> CommandOutput:
        """执行 docker 子命令"""
        cmd = [self.docker_binary, *args]
        logger.debug("Docker command: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeAPIError(f"Failed to invoke {self.docker_binary}: {e}") from e

        stdout, stderr = await process.communicate()
        output = CommandOutput(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
        if check and output.returncode != 0:
            raise RuntimeAPIError(
                f"docker {args[0]} failed: {output.stderr or output.stdout}",
                output.returncode,
                output.stderr,
            )
        return output

    async def image_exists(self, image: str) -> bool:
        result = await self.run("image", "inspect", image, check=False)
        return result.returncode == 0

    async def pull_image(self, image: str) -> None:
        logger.info("Pulling image: %s", image)
        await self.run("pull", image)

    @staticmethod
    def build_create_args(request: CreateRequest) -> list[str]:
        """构建 docker create 参数"""
        args = ["create", "--name", request.name]

        for key, value in request.labels.items():
            args.extend(["--label", f"{key}={value}"])

        # 身份与权限
        args.extend(["--user", request.user])
        for cap in request.cap_drop:
            args.extend(["--cap-drop", cap])
        for opt in request.security_opts:
            args.extend(["--security-opt", opt])

        # 网络隔离
        args.extend(["--network", request.network_mode])

        # 资源限制（内存与 swap 相同，禁止使用 swap 绕过限制）
        args.extend(["--cpus", str(request.cpus)])
        args.extend(["--memory", str(request.memory_bytes)])
        args.extend(["--memory-swap", str(request.memory_bytes)])
        args.extend(["--pids-limit", str(request.pids_limit)])

        # 只读根文件系统
        if request.read_only_root:
            args.append("--read-only")
            args.extend(["--tmpfs", f"/tmp:rw,noexec,nosuid,size={request.tmpfs_size}"])

        # 设置 UTF-8 环境变量，确保容器内输出正确的编码
        env = {"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8", **request.env}
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])

        for mount in request.mounts:
            args.extend(["-v", mount.to_volume()])

        if request.workdir:
            args.extend(["-w", request.workdir])

        args.extend(["--entrypoint", request.entrypoint, request.image, *request.command])
        return args

    async def create_container(self, request: CreateRequest) -> str:
        result = await self.run(*self.build_create_args(request))
        container_id = result.stdout.splitlines()[-1].strip() if result.stdout else ""
        if not container_id:
            raise RuntimeAPIError("docker create returned no container id", 0, result.stderr)
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self.run("start", container_id)

    async def inspect_container(self, container_id: str) -> dict[str, Any] | None:
        result = await self.run(
            "inspect", "--type", "container", "--format", "{{json .State}}", container_id,
            check=False,
        )
        if result.returncode != 0:
            error = RuntimeAPIError(result.stderr, result.returncode, result.stderr)
            if error.is_not_found:
                return None
            raise error
        return json.loads(result.stdout)

    async def stop_container(self, container_id: str, timeout_seconds: int = 5) -> None:
        await self.run("stop", "-t", str(timeout_seconds), container_id)

    async def remove_container(self, container_id: str) -> None:
        await self.run("rm", "-f", container_id)

    async def exec_start(
        self,
        container_id: str,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        user: str | None = None,
    ) -> DockerExecProcess:
        pid_file = f"/tmp/.sandbox-exec-{uuid.uuid4().hex[:12]}.pid"
        cmd = [self.docker_binary, "exec"]
        if user:
            cmd.extend(["--user", user])
        if workdir:
            cmd.extend(["-w", workdir])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([container_id, "sh", "-c", _EXEC_WRAPPER, pid_file, *argv])

        logger.debug("Docker exec: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeAPIError(f"Failed to invoke {self.docker_binary}: {e}") from e
        return DockerExecProcess(self, process, container_id, pid_file, user)

    async def list_containers(self, labels: dict[str, str]) -> list[dict[str, str]]:
        args = ["ps", "-a", "--no-trunc", "--format", "{{json .}}"]
        for key, value in labels.items():
            args.extend(["--filter", f"label={key}={value}"])
        result = await self.run(*args)

        containers = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            containers.append(
                {
                    "id": entry.get("ID", ""),
                    "name": entry.get("Names", ""),
                    "state": entry.get("State", ""),
                    "status": entry.get("Status", ""),
                }
            )
        return containers
