"""目标路径冲突处理

rename 策略在目标目录锁内完成"找空闲名 + 落盘"，
同一进程内并发 run 不会抢到同一个文件名。
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from ..exceptions import PermanentStepError
from ..models.enums import ConflictStrategy


@dataclass(frozen=True)
class Resolution:
    """冲突处理结果；skipped=True 表示目标已存在且策略为 skip"""

    path: Path
    skipped: bool = False


def _exists(path: Path) -> bool:
    return os.path.lexists(path)


def resolve_conflict(path: Path, strategy: ConflictStrategy) -> Resolution:
    """根据策略决定最终写入路径

    Raises:
        PermanentStepError: 策略为 fail 且目标已存在
    """
    if not _exists(path):
        return Resolution(path)

    if strategy == ConflictStrategy.OVERWRITE:
        return Resolution(path)
    if strategy == ConflictStrategy.SKIP:
        return Resolution(path, skipped=True)
    if strategy == ConflictStrategy.FAIL:
        raise PermanentStepError(f"destination already exists: {path}")

    n = 1
    while True:
        candidate = path.with_name(f"{path.stem}_{n}{path.suffix}")
        if not _exists(candidate):
            return Resolution(candidate)
        n += 1


class ConflictResolver:
    """按目标目录持有 asyncio.Lock 的冲突处理器"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, directory: Path) -> asyncio.Lock:
        key = os.path.normcase(os.path.abspath(directory))
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def resolve(self, path: Path, strategy: ConflictStrategy) -> Resolution:
        return resolve_conflict(path, strategy)
