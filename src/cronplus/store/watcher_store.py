"""WatcherStateStore SQLite 实现 -- 按 task_id last-writer-wins"""

import asyncio
import json
from datetime import datetime

import aiosqlite

from ..exceptions import StateStoreError
from ..models.enums import WatcherStatus
from ..models.watcher import FileSignature, WatcherState
from .transaction import run_in_transaction


def _dump_signatures(signatures: dict[str, FileSignature]) -> str:
    return json.dumps(
        {path: sig.model_dump() for path, sig in signatures.items()},
        ensure_ascii=False,
    )


def _load_signatures(raw: str | None) -> dict[str, FileSignature]:
    data = json.loads(raw) if raw else {}
    return {path: FileSignature(**sig) for path, sig in data.items()}


class SqliteWatcherStore:
    """WatcherStateStore 的 SQLite 实现"""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        self._conn = conn
        self._write_lock = write_lock or asyncio.Lock()

    async def save_watcher_state(self, state: WatcherState) -> None:
        """写入（覆盖）任务的监听状态"""
        params = (
            state.task_id,
            state.directory,
            state.status.value,
            state.last_scan_at.isoformat() if state.last_scan_at else None,
            state.error,
            _dump_signatures(state.emitted),
            _dump_signatures(state.pending),
        )

        async def _work() -> None:
            await self._conn.execute(
                """
                INSERT INTO watcher_state (task_id, directory, status, last_scan_at,
                                           error, emitted, pending)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    directory = excluded.directory,
                    status = excluded.status,
                    last_scan_at = excluded.last_scan_at,
                    error = excluded.error,
                    emitted = excluded.emitted,
                    pending = excluded.pending
                """,
                params,
            )

        try:
            await run_in_transaction(self._conn, self._write_lock, _work)
        except aiosqlite.Error as e:
            raise StateStoreError("save_watcher_state", e) from e

    async def get_watcher_state(self, task_id: str) -> WatcherState | None:
        """读取任务的监听状态"""
        cursor = await self._conn.execute(
            "SELECT task_id, directory, status, last_scan_at, error, emitted, pending"
            " FROM watcher_state WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return WatcherState(
            task_id=row[0],
            directory=row[1],
            status=WatcherStatus(row[2]),
            last_scan_at=datetime.fromisoformat(row[3]) if row[3] else None,
            error=row[4],
            emitted=_load_signatures(row[5]),
            pending=_load_signatures(row[6]),
        )
