"""全局 pytest 配置 -- 临时 SQLite Store、内存 Store 替身、任务构造工具"""

import asyncio
import copy
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from cronplus.engine.conflict import ConflictResolver
from cronplus.engine.deadletter import DeadLetterHandler
from cronplus.engine.devices import DeviceRegistry
from cronplus.engine.runner import PipelineRunner
from cronplus.engine.steps import StepExecutor
from cronplus.exceptions import DuplicateEventError, InvalidTransitionError
from cronplus.models import (
    ACTIVE_STATES,
    FileEvent,
    PipelineRun,
    RunEvent,
    RunEventType,
    RunFilter,
    RunStatus,
    TaskDefinition,
    WatcherState,
    validate_transition,
)
from cronplus.store import StoreGroup, create_store_group


class InMemoryRunStore:
    """RunStore 内存替身"""

    def __init__(self) -> None:
        self.runs: dict[str, PipelineRun] = {}
        self.events: list[RunEvent] = []

    def _event(self, run_id: str, event_type: RunEventType, payload: dict[str, Any]) -> None:
        seq = sum(1 for e in self.events if e.run_id == run_id) + 1
        self.events.append(
            RunEvent(
                event_id=f"{run_id}-{seq}",
                run_id=run_id,
                run_seq=seq,
                ts=datetime.now(UTC),
                type=event_type,
                payload=payload,
            )
        )

    async def create_run(self, run: PipelineRun) -> None:
        if await self.exists_active_run(run.task_id, run.source_path):
            raise DuplicateEventError(run.task_id, run.source_path)
        self.runs[run.run_id] = run.model_copy(deep=True)
        self._event(run.run_id, RunEventType.RUN_ADMITTED, {"status": run.status.value})

    async def save_run(
        self,
        run: PipelineRun,
        event_type: RunEventType = RunEventType.STATE_TRANSITION,
        payload: dict[str, Any] | None = None,
    ) -> None:
        stored = self.runs[run.run_id]
        if stored.status != run.status and not validate_transition(stored.status, run.status):
            raise InvalidTransitionError(run.run_id, stored.status.value, run.status.value)
        self.runs[run.run_id] = run.model_copy(deep=True)
        self._event(run.run_id, event_type, {"status": run.status.value, **(payload or {})})

    async def get_run(self, run_id: str) -> PipelineRun | None:
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[PipelineRun]:
        run_filter = run_filter or RunFilter()
        runs = [
            run.model_copy(deep=True)
            for run in self.runs.values()
            if (run_filter.task_id is None or run.task_id == run_filter.task_id)
            and (run_filter.status is None or run.status == run_filter.status)
            and (run_filter.source_path is None or run.source_path == run_filter.source_path)
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[: run_filter.limit] if run_filter.limit else runs

    async def exists_active_run(self, task_id: str, source_path: str) -> bool:
        return any(
            run.task_id == task_id
            and run.source_path == source_path
            and run.status in ACTIVE_STATES
            for run in self.runs.values()
        )

    async def reconcile_interrupted_runs(self) -> list[PipelineRun]:
        reconciled = []
        for run in self.runs.values():
            if run.status in ACTIVE_STATES:
                run.status = RunStatus.FAILED
                run.completed_at = datetime.now(UTC)
                run.error_message = "interrupted"
                self._event(run.run_id, RunEventType.RUN_INTERRUPTED, {})
                reconciled.append(run.model_copy(deep=True))
        return reconciled

    async def list_events(self, run_id: str) -> list[RunEvent]:
        return [e for e in self.events if e.run_id == run_id]


class InMemoryWatcherStore:
    """WatcherStateStore 内存替身"""

    def __init__(self) -> None:
        self.states: dict[str, WatcherState] = {}

    async def save_watcher_state(self, state: WatcherState) -> None:
        self.states[state.task_id] = state.model_copy(deep=True)

    async def get_watcher_state(self, task_id: str) -> WatcherState | None:
        state = self.states.get(task_id)
        return state.model_copy(deep=True) if state else None


class InMemoryTaskStore:
    """TaskDefinitionStore 内存替身"""

    def __init__(self) -> None:
        self.tasks: list[TaskDefinition] = []

    async def save_task_definitions(self, tasks: list[TaskDefinition]) -> None:
        self.tasks = copy.deepcopy(tasks)

    async def list_task_definitions(self) -> list[TaskDefinition]:
        return list(self.tasks)


def make_task(
    watch_dir: Path,
    pipeline: list[dict[str, Any]],
    task_id: str = "t1",
    **overrides: Any,
) -> TaskDefinition:
    """构造任务定义（camelCase 字典，与配置文档一致）"""
    watch = {"directory": str(watch_dir), "glob": "*", "debounceMs": 0, "stabilizationMs": 0}
    watch.update(overrides.pop("watch", {}))
    data = {"id": task_id, "watch": watch, "pipeline": pipeline, **overrides}
    return TaskDefinition.model_validate(data)


def make_event(path: Path, task_id: str = "t1") -> FileEvent:
    return FileEvent(task_id=task_id, source_path=str(path), detected_at=datetime.now(UTC))


async def no_sleep(_seconds: float) -> None:
    """替代 asyncio.sleep，跳过退避等待"""


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def recording_sleep(sleeps: list[float]):
    """记录退避时长的 sleep 替身"""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def memory_run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def memory_watcher_store() -> InMemoryWatcherStore:
    return InMemoryWatcherStore()


@pytest.fixture
def memory_task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest_asyncio.fixture
async def store_group(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """已初始化的临时 SQLite Store 实例组"""
    group = await create_store_group(str(tmp_path / "state" / "cronplus.db"))
    yield group
    await group.close()


class GatedDevice:
    """在 gate 打开前一直挂起的输出设备，用于让 run 保持活跃"""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.jobs: list[str] = []
        self.active = 0
        self.max_active = 0

    async def submit(self, path: Path, *, copies, duplex, options, timeout) -> str:
        self.jobs.append(path.name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        return f"job-{len(self.jobs)}"


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """轮询等待条件成立"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


def build_runner(
    run_store,
    dead_letter_dir: Path,
    devices: DeviceRegistry | None = None,
) -> PipelineRunner:
    """组装使用真实步骤执行器与死信处理的 PipelineRunner"""
    devices = devices or DeviceRegistry(which=lambda _name: None)
    dead_letter = DeadLetterHandler(run_store, dead_letter_dir)
    return PipelineRunner(
        run_store,
        StepExecutor(ConflictResolver(), devices),
        dead_letter,
        sleep=no_sleep,
    )
