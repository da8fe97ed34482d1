"""Store Protocol 接口定义

引擎只依赖这些接口，SQLite 之外的任意实现（包括测试中的内存替身）
满足接口即可替换。
"""

from typing import Any, Protocol

from ..models.enums import RunEventType
from ..models.run import PipelineRun, RunEvent, RunFilter
from ..models.task import TaskDefinition
from ..models.watcher import WatcherState


class RunStore(Protocol):
    """PipelineRun 存储接口"""

    async def create_run(self, run: PipelineRun) -> None:
        """插入新 run；同路径已有活跃 run 时抛出 DuplicateEventError"""
        ...

    async def save_run(
        self,
        run: PipelineRun,
        event_type: RunEventType = RunEventType.STATE_TRANSITION,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """写回 run 快照并追加事件"""
        ...

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """根据 run_id 查询 run"""
        ...

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[PipelineRun]:
        """按条件查询 run 列表"""
        ...

    async def exists_active_run(self, task_id: str, source_path: str) -> bool:
        """检查是否存在非终态 run"""
        ...

    async def reconcile_interrupted_runs(self) -> list[PipelineRun]:
        """将遗留活跃 run 标记为 failed（interrupted）"""
        ...

    async def list_events(self, run_id: str) -> list[RunEvent]:
        """查询 run 的事件日志"""
        ...


class WatcherStateStore(Protocol):
    """监听状态存储接口"""

    async def save_watcher_state(self, state: WatcherState) -> None:
        """写入（覆盖）监听状态"""
        ...

    async def get_watcher_state(self, task_id: str) -> WatcherState | None:
        """读取监听状态"""
        ...


class TaskDefinitionStore(Protocol):
    """任务定义快照存储接口"""

    async def save_task_definitions(self, tasks: list[TaskDefinition]) -> None:
        """整体替换任务定义快照"""
        ...

    async def list_task_definitions(self) -> list[TaskDefinition]:
        """列出任务定义快照"""
        ...
