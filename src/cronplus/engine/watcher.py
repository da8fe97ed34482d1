"""DirectoryWatcher -- 单任务目录监听 + 去抖/稳定判定

每个任务的 Watcher 独占自己的候选文件状态，只通过 sink 把就绪事件
交给 Dispatcher，不与其他组件共享可变状态。

一个路径在每个"周期"内至多发出一次就绪事件：
- 首次观察到（或签名变化）即视为一次通知，重置稳定计时
- (size, mtime) 保持不变达到 stabilizationMs 后发出事件；0 表示立即发出
- 发出后 debounceMs 内的变化被吸收；之后的变化开启新周期
- 路径消失则周期结束

就绪事件先记入 pending，Dispatcher 接收后（acknowledge）才转入 emitted。
"""

import asyncio
import fnmatch
import stat
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..config import DEAD_LETTER_SIDECAR_SUFFIX, TEMP_FILE_PREFIX
from ..exceptions import StateStoreError
from ..models.enums import WatcherStatus
from ..models.run import FileEvent
from ..models.task import RetryPolicy, TaskDefinition
from ..models.watcher import FileSignature, WatcherState
from ..store.protocols import WatcherStateStore
from ..store.transaction import persist_with_retry

log = structlog.get_logger()

EventSink = Callable[[FileEvent], Awaitable[None]]


@dataclass
class _Candidate:
    size: int
    mtime_ns: int
    detected_at: datetime
    last_change: float
    last_notified: float
    emitted: bool = False


class DirectoryWatcher:
    """轮询式目录监听器"""

    def __init__(
        self,
        task: TaskDefinition,
        sink: EventSink,
        state_store: WatcherStateStore,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        store_retry: RetryPolicy | None = None,
    ) -> None:
        self.task = task
        self._spec = task.watch
        self._sink = sink
        self._state_store = state_store
        self._poll_interval = poll_interval
        self._clock = clock
        self._store_retry = store_retry or RetryPolicy(max=3, backoff_ms=100)

        self._candidates: dict[str, _Candidate] = {}
        self._state = WatcherState(task_id=task.id, directory=self._spec.directory)
        self._dirty = False
        self._first_scan = True
        self._loaded = False
        self._stopping = asyncio.Event()
        self._flush_lock = asyncio.Lock()

    @property
    def status(self) -> WatcherStatus:
        return self._state.status

    async def load_state(self) -> None:
        """读取持久化的监听状态（重启后用于避免重复发出）"""
        stored = await self._state_store.get_watcher_state(self.task.id)
        if stored is not None and stored.directory == self._spec.directory:
            self._state = stored
        self._loaded = True

    async def run(self) -> None:
        """轮询循环，直到 stop() 被调用"""
        if not self._loaded:
            await self.load_state()
        log.info("watcher_started", task_id=self.task.id, directory=self._spec.directory)
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        log.info("watcher_stopped", task_id=self.task.id)

    def stop(self) -> None:
        self._stopping.set()

    async def tick(self) -> list[FileEvent]:
        """执行一次扫描，返回本次发出的就绪事件"""
        observed = await asyncio.to_thread(self._scan)
        now = self._clock()
        self._state.last_scan_at = datetime.now(UTC)

        if observed is None:
            self._mark_degraded()
            await self._flush_state()
            return []
        self._mark_active()

        ready = self._observe(observed, now)
        self._first_scan = False

        events: list[FileEvent] = []
        for path, candidate in sorted(ready, key=lambda item: item[1].detected_at):
            if not self._size_allowed(candidate.size):
                log.debug("file_ignored_size", task_id=self.task.id, path=path, size=candidate.size)
                continue
            event = FileEvent(
                task_id=self.task.id,
                source_path=path,
                detected_at=candidate.detected_at,
                stable_at=datetime.now(UTC),
            )
            self._state.pending[path] = FileSignature(
                size=candidate.size, mtime_ns=candidate.mtime_ns
            )
            self._dirty = True
            log.info("file_ready", task_id=self.task.id, path=path, size=candidate.size)
            await self._sink(event)
            events.append(event)

        await self._flush_state()
        return events

    async def acknowledge(self, event: FileEvent) -> None:
        """Dispatcher 已接收事件（建立 run，或该路径已有活跃 run）

        之后该路径才记入 emitted；未被接收的事件在重启后重新发出。
        """
        signature = self._state.pending.pop(event.source_path, None)
        if signature is None:
            return
        self._state.emitted[event.source_path] = signature
        self._dirty = True
        await self._flush_state()

    def _observe(
        self,
        observed: dict[str, tuple[int, int]],
        now: float,
    ) -> list[tuple[str, _Candidate]]:
        """根据本次扫描结果推进每个候选路径的周期，返回就绪路径"""
        debounce = self._spec.debounce_ms / 1000
        stabilization = self._spec.stabilization_ms / 1000

        for path in list(self._candidates):
            if path not in observed:
                del self._candidates[path]
        for signatures in (self._state.emitted, self._state.pending):
            for path in list(signatures):
                if path not in observed:
                    del signatures[path]
                    self._dirty = True

        ready: list[tuple[str, _Candidate]] = []
        for path, (size, mtime_ns) in observed.items():
            candidate = self._candidates.get(path)
            if candidate is None:
                candidate = _Candidate(
                    size=size,
                    mtime_ns=mtime_ns,
                    detected_at=datetime.now(UTC),
                    last_change=now,
                    last_notified=now,
                )
                self._candidates[path] = candidate
                if self._already_handled(path, size, mtime_ns):
                    candidate.emitted = True
                    continue
            elif (size, mtime_ns) != (candidate.size, candidate.mtime_ns):
                candidate.size = size
                candidate.mtime_ns = mtime_ns
                if candidate.emitted:
                    if now - candidate.last_notified < debounce:
                        candidate.last_notified = now
                        for signatures in (self._state.pending, self._state.emitted):
                            if path in signatures:
                                signatures[path] = FileSignature(size=size, mtime_ns=mtime_ns)
                                self._dirty = True
                                break
                        continue
                    candidate.emitted = False
                    candidate.detected_at = datetime.now(UTC)
                candidate.last_change = now
                candidate.last_notified = now

            if candidate.emitted:
                continue
            if stabilization == 0 or now - candidate.last_change >= stabilization:
                candidate.emitted = True
                candidate.last_notified = now
                ready.append((path, candidate))
        return ready

    def _already_handled(self, path: str, size: int, mtime_ns: int) -> bool:
        """重启前已被接收且未变化，或启动时已存在且不处理存量文件

        发出后未被接收的路径（停止时仍在队列中）总是重新发出。
        """
        if path in self._state.pending:
            return False
        signature = self._state.emitted.get(path)
        if signature is not None and (signature.size, signature.mtime_ns) == (size, mtime_ns):
            return True
        return self._first_scan and not self._spec.process_existing

    def _size_allowed(self, size: int) -> bool:
        if self._spec.min_file_size_bytes is not None and size < self._spec.min_file_size_bytes:
            return False
        if self._spec.max_file_size_bytes is not None and size > self._spec.max_file_size_bytes:
            return False
        return True

    def _scan(self) -> dict[str, tuple[int, int]] | None:
        """扫描监听目录；目录不存在时返回 None"""
        root = Path(self._spec.directory)
        if not root.is_dir():
            return None

        if self._spec.include_subdirectories:
            entries = root.rglob(self._spec.glob)
        else:
            entries = root.glob(self._spec.glob)
        observed: dict[str, tuple[int, int]] = {}
        for path in entries:
            name = path.name
            if name.startswith(TEMP_FILE_PREFIX) or name.endswith(DEAD_LETTER_SIDECAR_SUFFIX):
                continue
            if any(fnmatch.fnmatch(name, pattern) for pattern in self._spec.exclude_patterns):
                continue
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                # 下一次轮询重试；保留已有候选
                log.debug("watch_stat_failed", task_id=self.task.id, path=str(path), error=str(e))
                known = self._candidates.get(str(path))
                if known is not None:
                    observed[str(path)] = (known.size, known.mtime_ns)
                continue
            if stat.S_ISREG(st.st_mode):
                observed[str(path)] = (st.st_size, st.st_mtime_ns)
        return observed

    def _mark_degraded(self) -> None:
        if self._state.status == WatcherStatus.DEGRADED:
            return
        self._state.status = WatcherStatus.DEGRADED
        self._state.error = f"watch directory missing: {self._spec.directory}"
        self._candidates.clear()
        self._dirty = True
        log.warning(
            "watch_directory_missing",
            task_id=self.task.id,
            directory=self._spec.directory,
        )

    def _mark_active(self) -> None:
        if self._state.status == WatcherStatus.ACTIVE:
            return
        self._state.status = WatcherStatus.ACTIVE
        self._state.error = None
        self._dirty = True
        log.info("watch_directory_restored", task_id=self.task.id, directory=self._spec.directory)

    async def _flush_state(self) -> None:
        async with self._flush_lock:
            if not self._dirty:
                return
            self._dirty = False
            try:
                await persist_with_retry(
                    lambda: self._state_store.save_watcher_state(self._state),
                    self._store_retry,
                )
            except StateStoreError as e:
                # 下一次扫描再写
                self._dirty = True
                log.error(
                    "watcher_state_persist_failed", task_id=self.task.id, error=str(e)
                )
