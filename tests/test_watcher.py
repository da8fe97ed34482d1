"""DirectoryWatcher 测试

使用可控时钟驱动 tick()，验证：
1. 稳定判定与去抖
2. 每个周期至多一次就绪事件，路径重现开启新周期
3. 目录消失时任务降级而不崩溃，恢复后继续发出
4. 重启后不重复发出已处理且未变化的文件
5. 过滤规则（排除模式、临时文件、大小、子目录、存量文件）
"""

import os
from pathlib import Path

import pytest
from cronplus.config import DEAD_LETTER_SIDECAR_SUFFIX, TEMP_FILE_PREFIX
from cronplus.engine.watcher import DirectoryWatcher
from cronplus.models import FileEvent, WatcherStatus

from .conftest import make_task


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[FileEvent] = []

    async def __call__(self, event: FileEvent) -> None:
        self.events.append(event)

    @property
    def paths(self) -> list[str]:
        return [e.source_path for e in self.events]


def _touch(path: Path, content: str, mtime_ns: int) -> None:
    path.write_text(content)
    os.utime(path, ns=(mtime_ns, mtime_ns))


@pytest.fixture
def inbox(tmp_path: Path) -> Path:
    path = tmp_path / "inbox"
    path.mkdir()
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def _watcher(inbox, sink, store, clock, **watch) -> DirectoryWatcher:
    task = make_task(inbox, [{"type": "delete"}], watch=watch)
    return DirectoryWatcher(task, sink, store, clock=clock)


class TestStabilization:
    async def test_zero_stabilization_emits_immediately(
        self, inbox, sink, memory_watcher_store, clock
    ):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock)
        _touch(inbox / "a.txt", "data", 1_000_000_000)

        events = await watcher.tick()
        assert [e.source_path for e in events] == [str(inbox / "a.txt")]
        assert events[0].task_id == "t1"
        assert events[0].stable_at is not None

    async def test_waits_until_unchanged_for_stabilization(
        self, inbox, sink, memory_watcher_store, clock
    ):
        """写入过程中的变化会重置稳定计时"""
        watcher = _watcher(
            inbox, sink, memory_watcher_store, clock, stabilizationMs=1000, debounceMs=200
        )
        path = inbox / "big.bin"
        _touch(path, "part", 1_000_000_000)
        await watcher.tick()

        clock.now = 0.5
        _touch(path, "part-two", 2_000_000_000)
        await watcher.tick()

        clock.now = 1.2
        await watcher.tick()
        assert sink.events == []

        clock.now = 1.6
        await watcher.tick()
        assert sink.paths == [str(path)]

    async def test_one_event_per_cycle(self, inbox, sink, memory_watcher_store, clock):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock)
        _touch(inbox / "a.txt", "data", 1_000_000_000)
        for step in range(5):
            clock.now = float(step)
            await watcher.tick()
        assert len(sink.events) == 1

    async def test_change_within_debounce_absorbed(
        self, inbox, sink, memory_watcher_store, clock
    ):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock, debounceMs=500)
        path = inbox / "a.txt"
        _touch(path, "v1", 1_000_000_000)
        await watcher.tick()

        clock.now = 0.2
        _touch(path, "v1-trailing", 2_000_000_000)
        await watcher.tick()
        assert len(sink.events) == 1

    async def test_overwrite_after_debounce_starts_new_cycle(
        self, inbox, sink, memory_watcher_store, clock
    ):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock, debounceMs=500)
        path = inbox / "a.txt"
        _touch(path, "v1", 1_000_000_000)
        await watcher.tick()

        clock.now = 5.0
        _touch(path, "version-two", 9_000_000_000)
        await watcher.tick()
        assert sink.paths == [str(path), str(path)]

    async def test_vanished_path_can_reappear(self, inbox, sink, memory_watcher_store, clock):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock)
        path = inbox / "a.txt"
        _touch(path, "v1", 1_000_000_000)
        await watcher.tick()

        path.unlink()
        clock.now = 1.0
        await watcher.tick()
        assert str(path) not in memory_watcher_store.states["t1"].emitted

        _touch(path, "v1", 1_000_000_000)
        clock.now = 2.0
        await watcher.tick()
        assert len(sink.events) == 2


class TestDegradation:
    async def test_missing_directory_degrades_task(
        self, tmp_path, sink, memory_watcher_store, clock
    ):
        missing = tmp_path / "not-yet"
        watcher = _watcher(missing, sink, memory_watcher_store, clock)

        assert await watcher.tick() == []
        assert watcher.status == WatcherStatus.DEGRADED
        state = memory_watcher_store.states["t1"]
        assert state.status == WatcherStatus.DEGRADED
        assert "not-yet" in state.error

        missing.mkdir()
        _touch(missing / "late.txt", "x", 1_000_000_000)
        clock.now = 1.0
        await watcher.tick()
        assert watcher.status == WatcherStatus.ACTIVE
        assert memory_watcher_store.states["t1"].error is None
        assert sink.paths == [str(missing / "late.txt")]


class TestRestart:
    async def test_unchanged_file_not_reemitted_after_restart(
        self, inbox, sink, memory_watcher_store, clock
    ):
        path = inbox / "a.txt"
        _touch(path, "data", 1_000_000_000)
        first = _watcher(inbox, sink, memory_watcher_store, clock)
        await first.load_state()
        await first.tick()
        for event in sink.events:
            await first.acknowledge(event)

        second_sink = RecordingSink()
        second = _watcher(inbox, second_sink, memory_watcher_store, clock)
        await second.load_state()
        await second.tick()
        assert second_sink.events == []

    async def test_changed_file_reemitted_after_restart(
        self, inbox, sink, memory_watcher_store, clock
    ):
        path = inbox / "a.txt"
        _touch(path, "data", 1_000_000_000)
        first = _watcher(inbox, sink, memory_watcher_store, clock)
        await first.load_state()
        await first.tick()
        for event in sink.events:
            await first.acknowledge(event)

        _touch(path, "new data", 5_000_000_000)
        second_sink = RecordingSink()
        second = _watcher(inbox, second_sink, memory_watcher_store, clock)
        await second.load_state()
        await second.tick()
        assert second_sink.paths == [str(path)]

    async def test_unacknowledged_event_reemitted_after_restart(
        self, inbox, sink, memory_watcher_store, clock
    ):
        """发出后未被 Dispatcher 接收的文件，重启后重新发出（即使不处理存量文件）"""
        path = inbox / "a.txt"
        _touch(path, "data", 1_000_000_000)
        first = _watcher(inbox, sink, memory_watcher_store, clock)
        await first.load_state()
        await first.tick()
        state = memory_watcher_store.states["t1"]
        assert str(path) in state.pending
        assert str(path) not in state.emitted

        second_sink = RecordingSink()
        second = _watcher(
            inbox, second_sink, memory_watcher_store, clock, processExisting=False
        )
        await second.load_state()
        await second.tick()
        assert second_sink.paths == [str(path)]

    async def test_acknowledge_moves_pending_to_emitted(
        self, inbox, sink, memory_watcher_store, clock
    ):
        path = inbox / "a.txt"
        _touch(path, "data", 1_000_000_000)
        watcher = _watcher(inbox, sink, memory_watcher_store, clock)
        (event,) = await watcher.tick()

        await watcher.acknowledge(event)

        state = memory_watcher_store.states["t1"]
        assert state.pending == {}
        assert state.emitted[str(path)].size == 4


class TestFilters:
    async def test_glob_and_exclude_patterns(self, inbox, sink, memory_watcher_store, clock):
        watcher = _watcher(
            inbox, sink, memory_watcher_store, clock, glob="*.pdf", excludePatterns=["draft-*"]
        )
        _touch(inbox / "keep.pdf", "x", 1_000_000_000)
        _touch(inbox / "draft-1.pdf", "x", 1_000_000_000)
        _touch(inbox / "notes.txt", "x", 1_000_000_000)
        await watcher.tick()
        assert sink.paths == [str(inbox / "keep.pdf")]

    async def test_internal_files_ignored(self, inbox, sink, memory_watcher_store, clock):
        watcher = _watcher(inbox, sink, memory_watcher_store, clock)
        _touch(inbox / f"{TEMP_FILE_PREFIX}abc", "x", 1_000_000_000)
        _touch(inbox / f"a.txt{DEAD_LETTER_SIDECAR_SUFFIX}", "{}", 1_000_000_000)
        await watcher.tick()
        assert sink.events == []

    async def test_size_limits(self, inbox, sink, memory_watcher_store, clock):
        watcher = _watcher(
            inbox, sink, memory_watcher_store, clock, minFileSizeBytes=2, maxFileSizeBytes=5
        )
        _touch(inbox / "tiny.txt", "x", 1_000_000_000)
        _touch(inbox / "ok.txt", "okay", 1_000_000_000)
        _touch(inbox / "huge.txt", "x" * 50, 1_000_000_000)
        await watcher.tick()
        assert sink.paths == [str(inbox / "ok.txt")]

    async def test_subdirectories(self, inbox, sink, memory_watcher_store, clock):
        nested = inbox / "2024" / "03"
        nested.mkdir(parents=True)
        _touch(nested / "deep.txt", "x", 1_000_000_000)

        flat = _watcher(inbox, sink, memory_watcher_store, clock)
        await flat.tick()
        assert sink.events == []

        recursive_sink = RecordingSink()
        recursive = _watcher(
            inbox, recursive_sink, memory_watcher_store, clock, includeSubdirectories=True
        )
        await recursive.tick()
        assert recursive_sink.paths == [str(nested / "deep.txt")]

    async def test_existing_files_skipped_when_not_processing_existing(
        self, inbox, sink, memory_watcher_store, clock
    ):
        _touch(inbox / "old.txt", "x", 1_000_000_000)
        watcher = _watcher(inbox, sink, memory_watcher_store, clock, processExisting=False)
        await watcher.tick()
        assert sink.events == []

        _touch(inbox / "new.txt", "x", 2_000_000_000)
        clock.now = 1.0
        await watcher.tick()
        assert sink.paths == [str(inbox / "new.txt")]
