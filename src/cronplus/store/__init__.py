"""CronPlus Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
"""

import asyncio
from pathlib import Path

import aiosqlite

from .protocols import RunStore, TaskDefinitionStore, WatcherStateStore
from .run_store import SqliteRunStore
from .sqlite_init import init_db
from .task_store import SqliteTaskStore
from .transaction import persist_with_retry, run_in_transaction
from .watcher_store import SqliteWatcherStore


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接与写锁"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        write_lock = asyncio.Lock()
        self.run_store = SqliteRunStore(conn, write_lock)
        self.watcher_store = SqliteWatcherStore(conn, write_lock)
        self.task_store = SqliteTaskStore(conn, write_lock)

    async def close(self) -> None:
        await self.conn.close()


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径

    Returns:
        StoreGroup 实例
    """
    # 确保数据库目录存在
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return StoreGroup(conn=conn)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "RunStore",
    "WatcherStateStore",
    "TaskDefinitionStore",
    "SqliteRunStore",
    "SqliteWatcherStore",
    "SqliteTaskStore",
    "init_db",
    "persist_with_retry",
    "run_in_transaction",
]
