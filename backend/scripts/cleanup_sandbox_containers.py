#!/usr/bin/env python3
"""
沙箱容器清理脚本

清理引擎遗留的沙箱容器（进程崩溃或被强制结束后无法自行回收的孤儿容器）

安全保护：
- 只处理带有 sandbox-engine.managed=true 标签的容器
- 删除前再次校验名称前缀 "sandbox-"，不会误删其他 Docker 容器
- 可按 --owner 仅清理某个管理器实例创建的容器

用法:
    python scripts/cleanup_sandbox_containers.py              # 交互式清理
    python scripts/cleanup_sandbox_containers.py --force       # 强制清理（不询问）
    python scripts/cleanup_sandbox_containers.py --dry-run     # 仅显示，不实际删除
    python scripts/cleanup_sandbox_containers.py --stopped-only
    python scripts/cleanup_sandbox_containers.py --owner 3f2a9c1b7d4e
"""

import argparse
import asyncio
import io
import sys

from sandbox_engine.config import get_settings
from sandbox_engine.sandbox.lifecycle import CONTAINER_PREFIX, MANAGED_LABEL, OWNER_LABEL
from sandbox_engine.sandbox.runtime import DockerCLIRuntime, RuntimeAPIError
from sandbox_engine.utils.logging import get_logger, setup_logging

# 设置标准输出编码为 UTF-8（Windows 兼容）
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8", errors="replace")


logger = get_logger(__name__)


async def list_managed_containers(
    runtime: DockerCLIRuntime,
    owner: str | None = None,
    stopped_only: bool = False,
) -> list[dict[str, str]]:
    """
    列出引擎管理的容器

    Args:
        runtime: Docker 运行时
        owner: 仅列出该管理器实例的容器
        stopped_only: 仅列出已停止的容器

    Returns:
        容器信息列表（id / name / state / status）
    """
    labels = {MANAGED_LABEL: "true"}
    if owner:
        labels[OWNER_LABEL] = owner

    containers = await runtime.list_containers(labels)
    result = []
    for container in containers:
        # 标签可以被任意容器伪造，名称前缀作为第二道校验
        if not container["name"].startswith(CONTAINER_PREFIX):
            logger.warning(
                "Skipping labelled container without sandbox prefix: %s", container["name"]
            )
            continue
        if stopped_only and container["state"] == "running":
            continue
        result.append(container)
    return result


async def cleanup_containers(
    runtime: DockerCLIRuntime,
    containers: list[dict[str, str]],
) -> list[str]:
    """
    强制删除容器（并发执行，单个失败不影响其余）

    Returns:
        已清理的容器名称列表
    """
    if not containers:
        return []

    results = await asyncio.gather(
        *(runtime.remove_container(c["id"]) for c in containers),
        return_exceptions=True,
    )

    cleaned = []
    for container, outcome in zip(containers, results, strict=True):
        # 已被其他进程删除的容器同样视为清理成功
        already_gone = isinstance(outcome, RuntimeAPIError) and outcome.is_not_found
        if isinstance(outcome, BaseException) and not already_gone:
            logger.warning("Failed to cleanup container %s: %s", container["name"], outcome)
        else:
            cleaned.append(container["name"])
            logger.info("Cleaned up container: %s", container["name"])
    return cleaned


def print_container_list(containers: list[dict[str, str]], title: str = "沙箱容器列表") -> None:
    """打印容器列表"""
    if not containers:
        print(f"\n{title}: 无")
        return

    print(f"\n{title} ({len(containers)} 个):")
    print("-" * 80)
    for i, container in enumerate(containers, 1):
        status_icon = "🟢" if container["state"] == "running" else "🔴"
        print(f"{i:3d}. {status_icon} {container['name']:30s} [{container['status']}]")
    print("-" * 80)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="清理沙箱容器（sandbox-engine.managed 标签）",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="强制清理（不询问确认，包括运行中的容器）",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="仅显示要清理的容器，不实际删除",
    )
    parser.add_argument(
        "--stopped-only",
        action="store_true",
        help="仅清理已停止的容器",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="仅清理指定管理器实例（sandbox-engine.owner 标签）的容器",
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    runtime = DockerCLIRuntime(settings.docker_binary)

    print("=" * 80)
    print("沙箱容器清理工具")
    print("=" * 80)

    try:
        containers = await list_managed_containers(
            runtime, owner=args.owner, stopped_only=args.stopped_only
        )
    except RuntimeAPIError as e:
        print(f"\n❌ 无法列出容器: {e}")
        return 1

    if not containers:
        print("\n✅ 没有找到沙箱容器，无需清理。")
        return 0

    print_container_list(containers, "待清理的容器")

    running = [c for c in containers if c["state"] == "running"]
    if running and not args.force:
        print(f"\n⚠️  警告: 发现 {len(running)} 个运行中的容器:")
        for container in running:
            print(f"    - {container['name']}")

    if args.dry_run:
        print("\n🔍 预览模式（--dry-run）: 不会实际删除容器")
        return 0

    if not args.force:
        print("\n❓ 确认删除以上容器? [y/N]: ", end="", flush=True)
        try:
            response = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            response = ""
        if response not in ("y", "yes"):
            print("\n❌ 已取消清理操作")
            return 1

    print("\n🧹 开始清理容器...")
    cleaned = await cleanup_containers(runtime, containers)

    print("\n" + "=" * 80)
    if cleaned:
        print(f"✅ 成功清理 {len(cleaned)} 个容器:")
        for name in cleaned:
            print(f"    ✓ {name}")
    else:
        print("⚠️  没有容器被清理")
    print("=" * 80)
    return 0 if len(cleaned) == len(containers) else 1


def run() -> None:
    """命令行入口"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n\n❌ 操作被用户中断")
        sys.exit(1)


if __name__ == "__main__":
    run()
