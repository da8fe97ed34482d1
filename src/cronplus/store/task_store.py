"""TaskDefinitionStore SQLite 实现

保存每次配置加载后的任务定义快照，供外部报表查看当前生效配置。
"""

import asyncio
import json
from datetime import UTC, datetime

import aiosqlite

from ..exceptions import StateStoreError
from ..models.task import TaskDefinition
from .transaction import run_in_transaction


class SqliteTaskStore:
    """TaskDefinitionStore 的 SQLite 实现"""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        self._conn = conn
        self._write_lock = write_lock or asyncio.Lock()

    async def save_task_definitions(self, tasks: list[TaskDefinition]) -> None:
        """以本次加载结果整体替换任务定义快照"""
        loaded_at = datetime.now(UTC).isoformat()

        async def _work() -> None:
            await self._conn.execute("DELETE FROM task_definitions")
            await self._conn.executemany(
                """
                INSERT INTO task_definitions (task_id, enabled, definition, loaded_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (
                        task.id,
                        int(task.enabled),
                        task.model_dump_json(by_alias=True),
                        loaded_at,
                    )
                    for task in tasks
                ],
            )

        try:
            await run_in_transaction(self._conn, self._write_lock, _work)
        except aiosqlite.Error as e:
            raise StateStoreError("save_task_definitions", e) from e

    async def list_task_definitions(self) -> list[TaskDefinition]:
        """按 task_id 顺序列出已保存的任务定义"""
        cursor = await self._conn.execute(
            "SELECT definition FROM task_definitions ORDER BY task_id"
        )
        rows = await cursor.fetchall()
        return [TaskDefinition.model_validate(json.loads(row[0])) for row in rows]
