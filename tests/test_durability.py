"""进程重启持久性测试

测试内容：
1. run 写入 -> 关闭连接 -> 重新打开 -> 数据完整
2. 上一进程遗留的 running run 被标记为 failed（interrupted），不会被续跑
"""

from datetime import UTC, datetime
from pathlib import Path

from cronplus.models import FileEvent, PipelineRun, RunEventType, RunStatus
from cronplus.store import create_store_group
from cronplus.store.run_store import INTERRUPTED_MESSAGE


def _running(run_id: str, path: str) -> PipelineRun:
    now = datetime.now(UTC)
    return PipelineRun(
        run_id=run_id,
        task_id="t1",
        file_event=FileEvent(task_id="t1", source_path=path, detected_at=now),
        started_at=now,
        status=RunStatus.RUNNING,
    )


class TestDurability:
    async def test_run_survives_restart(self, tmp_path: Path):
        db_path = str(tmp_path / "durability.db")

        group1 = await create_store_group(db_path)
        await group1.run_store.create_run(_running("01RUNDUR000000000000000001", "/in/a.txt"))
        await group1.close()

        group2 = await create_store_group(db_path)
        try:
            restored = await group2.run_store.get_run("01RUNDUR000000000000000001")
            assert restored is not None
            assert restored.source_path == "/in/a.txt"
        finally:
            await group2.close()

    async def test_running_row_reconciled_to_failed(self, tmp_path: Path):
        """重启后遗留 running 行标记为 failed/interrupted"""
        db_path = str(tmp_path / "durability.db")

        group1 = await create_store_group(db_path)
        await group1.run_store.create_run(_running("01RUNDUR000000000000000001", "/in/a.txt"))
        done = _running("01RUNDUR000000000000000002", "/in/b.txt")
        await group1.run_store.create_run(done)
        done.status = RunStatus.SUCCEEDED
        await group1.run_store.save_run(done)
        await group1.close()

        group2 = await create_store_group(db_path)
        try:
            reconciled = await group2.run_store.reconcile_interrupted_runs()
            assert [r.run_id for r in reconciled] == ["01RUNDUR000000000000000001"]

            restored = await group2.run_store.get_run("01RUNDUR000000000000000001")
            assert restored.status == RunStatus.FAILED
            assert restored.error_message == INTERRUPTED_MESSAGE
            assert restored.completed_at is not None
            assert await group2.run_store.exists_active_run("t1", "/in/a.txt") is False

            events = await group2.run_store.list_events("01RUNDUR000000000000000001")
            assert events[-1].type == RunEventType.RUN_INTERRUPTED

            untouched = await group2.run_store.get_run("01RUNDUR000000000000000002")
            assert untouched.status == RunStatus.SUCCEEDED

            assert await group2.run_store.reconcile_interrupted_runs() == []
        finally:
            await group2.close()
