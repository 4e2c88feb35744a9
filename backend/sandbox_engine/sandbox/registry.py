"""
Resource Registry - 活跃资源注册表

进程内唯一需要共享的可变状态：记录需要清理的容器、会话与仓库。
由管理器实例持有（无全局/静态状态），使用线程锁保护，锁从不跨越 await。
"""

from __future__ import annotations

from collections.abc import Iterator
import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class ResourceRegistry(Generic[T]):
    """线程安全的资源注册表"""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def add(self, key: str, item: T) -> None:
        with self._lock:
            self._items[key] = item

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._items.get(key)

    def pop(self, key: str) -> T | None:
        """移除并返回条目，不存在时返回 None"""
        with self._lock:
            return self._items.pop(key, None)

    def snapshot(self) -> dict[str, T]:
        """返回当前条目的副本（可在迭代时安全修改注册表）"""
        with self._lock:
            return dict(self._items)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __repr__(self) -> str:
        return f"ResourceRegistry(kind={self.kind!r}, size={len(self)})"
