"""步骤执行器

每种步骤类型对应一个处理方法，按 type 穷举分派。
文件写入统一走"临时文件 + fsync + rename + 目录 fsync"，
move 只有在目标落盘确认后才删除源文件。

异常分类：
- 当前输入文件不存在 -> PermanentStepError
- 其余 OSError（含校验失败） -> TransientIOError
- 其他意外异常 -> PermanentStepError
"""

import asyncio
import gzip
import hashlib
import os
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, TypeVar, assert_never

import structlog

from ..config import COPY_CHUNK_SIZE, TEMP_FILE_PREFIX
from ..exceptions import CronplusError, PermanentStepError, TransientIOError
from ..models.enums import StepOutcome
from ..models.run import PipelineRun
from ..models.task import (
    ArchiveStep,
    CopyStep,
    DecisionStep,
    DeleteStep,
    MoveStep,
    PrintStep,
    StepDefinition,
    TransferStepBase,
)
from .conditions import evaluate_decision
from .conflict import ConflictResolver
from .devices import DeviceRegistry
from .translator import translate

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class StepOutput:
    """步骤执行结果；current_path 为步骤完成后文件所在位置"""

    outcome: StepOutcome
    current_path: Path
    resulting_path: Path | None = None


def _fsync_dir(directory: Path) -> None:
    """fsync 目录项，使 rename/unlink 落盘；平台不支持时跳过"""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _digest(stream: BinaryIO) -> str:
    sha = hashlib.sha256()
    while chunk := stream.read(COPY_CHUNK_SIZE):
        sha.update(chunk)
    return sha.hexdigest()


def file_digest(path: Path, compressed: bool = False) -> str:
    """计算文件 SHA-256；compressed=True 时计算解压后的内容"""
    if compressed:
        with gzip.open(path, "rb") as stream:
            return _digest(stream)
    with open(path, "rb") as stream:
        return _digest(stream)


def _copy_stream(src: BinaryIO, out: BinaryIO, compress: bool, name: str) -> None:
    if compress:
        with gzip.GzipFile(filename=name, mode="wb", fileobj=out) as gz:
            while chunk := src.read(COPY_CHUNK_SIZE):
                gz.write(chunk)
    else:
        while chunk := src.read(COPY_CHUNK_SIZE):
            out.write(chunk)
    out.flush()
    os.fsync(out.fileno())


def write_file(
    source: Path,
    target: Path,
    *,
    atomic: bool,
    verify_checksum: bool,
    compress: bool = False,
) -> None:
    """把 source 写入 target 并确认落盘

    Raises:
        FileNotFoundError: 源文件不存在
        TransientIOError: 校验不一致
        OSError: 其他 I/O 错误
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(source, "rb") as src:
        if atomic:
            fd, tmp_name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=target.parent)
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as out:
                    _copy_stream(src, out, compress, source.name)
                if verify_checksum:
                    _verify(source, tmp_path, compress)
                os.replace(tmp_path, target)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        else:
            try:
                with open(target, "wb") as out:
                    _copy_stream(src, out, compress, source.name)
                if verify_checksum:
                    _verify(source, target, compress)
            except TransientIOError:
                target.unlink(missing_ok=True)
                raise
    _fsync_dir(target.parent)


def _verify(source: Path, written: Path, compressed: bool) -> None:
    expected = file_digest(source)
    actual = file_digest(written, compressed=compressed)
    if expected != actual:
        raise TransientIOError(f"checksum mismatch writing {source} -> {written}")


def _same_content(source: Path, written: Path, compressed: bool) -> bool:
    if not written.is_file():
        return False
    return file_digest(source) == file_digest(written, compressed=compressed)


def secure_erase(path: Path, passes: int) -> None:
    """多遍覆写后删除：偶数遍写 0x00，奇数遍写 0xFF，最后一遍写随机数据"""
    size = path.stat().st_size
    with open(path, "r+b") as stream:
        for n in range(passes):
            stream.seek(0)
            remaining = size
            while remaining > 0:
                chunk_size = min(remaining, COPY_CHUNK_SIZE)
                if n == passes - 1:
                    chunk = os.urandom(chunk_size)
                else:
                    chunk = (b"\x00" if n % 2 == 0 else b"\xff") * chunk_size
                stream.write(chunk)
                remaining -= chunk_size
            stream.flush()
            os.fsync(stream.fileno())
    path.unlink()
    _fsync_dir(path.parent)


class StepExecutor:
    """执行单个步骤，不负责重试（由 RetryController 包裹）"""

    def __init__(self, resolver: ConflictResolver, devices: DeviceRegistry) -> None:
        self._resolver = resolver
        self._devices = devices

    async def execute(
        self,
        step: StepDefinition,
        run: PipelineRun,
        current: Path,
        committed: dict[Path, Path] | None = None,
    ) -> StepOutput:
        """执行步骤，并把底层异常归类为临时/永久错误

        Args:
            committed: 同一步骤各次尝试共享；记录已落盘的目标文件，
                重试时内容一致则不再写入（move 只重试删除源文件）
        """
        return await self._classified(
            lambda: self._dispatch(step, run, current, committed), current
        )

    async def _dispatch(
        self,
        step: StepDefinition,
        run: PipelineRun,
        current: Path,
        committed: dict[Path, Path] | None,
    ) -> StepOutput:
        match step:
            case CopyStep():
                return await self._transfer(
                    step, current, Path(step.destination), committed=committed
                )
            case MoveStep():
                return await self._transfer(
                    step,
                    current,
                    Path(step.destination),
                    remove_source=True,
                    committed=committed,
                )
            case ArchiveStep():
                period = run.started_at.strftime(step.period_format)
                return await self._transfer(
                    step,
                    current,
                    Path(step.destination) / period,
                    compress=step.compress,
                    committed=committed,
                )
            case PrintStep():
                return await self._print(step, current)
            case DeleteStep():
                return await self._delete(step, current)
            case DecisionStep():
                return self._decide(step, current)
            case _:
                assert_never(step)

    async def _classified(self, operation: Callable[[], Awaitable[T]], current: Path) -> T:
        try:
            return await operation()
        except CronplusError:
            raise
        except FileNotFoundError as e:
            if not current.exists():
                raise PermanentStepError(f"input file missing: {current}") from e
            raise TransientIOError(str(e), e) from e
        except OSError as e:
            raise TransientIOError(f"{type(e).__name__}: {e}", e) from e
        except Exception as e:
            raise PermanentStepError(f"{type(e).__name__}: {e}") from e

    async def _transfer(
        self,
        step: TransferStepBase,
        current: Path,
        dest_dir: Path,
        *,
        remove_source: bool = False,
        compress: bool = False,
        committed: dict[Path, Path] | None = None,
    ) -> StepOutput:
        if not current.exists():
            raise PermanentStepError(f"input file missing: {current}")

        name = translate(current.name, step.pattern)
        if compress:
            name += ".gz"
        target = dest_dir / name

        async with self._resolver.lock_for(dest_dir):
            earlier = committed.get(current) if committed is not None else None
            if earlier is not None and await asyncio.to_thread(
                _same_content, current, earlier, compress
            ):
                destination = earlier
                log.info(
                    "transfer_already_written", path=str(current), destination=str(earlier)
                )
            else:
                resolution = self._resolver.resolve(target, step.conflict_strategy)
                if resolution.skipped:
                    log.info(
                        "destination_exists_skipped",
                        path=str(current),
                        destination=str(target),
                    )
                    return StepOutput(StepOutcome.SKIPPED, current)

                destination = resolution.path
                if destination.exists() and os.path.samefile(current, destination):
                    return StepOutput(StepOutcome.SUCCEEDED, current, destination)

                await asyncio.to_thread(
                    write_file,
                    current,
                    destination,
                    atomic=step.atomic,
                    verify_checksum=step.verify_checksum,
                    compress=compress,
                )
                if committed is not None:
                    committed[current] = destination

        if remove_source:
            await asyncio.to_thread(self._remove_source, current)

        return StepOutput(StepOutcome.SUCCEEDED, destination, destination)

    @staticmethod
    def _remove_source(source: Path) -> None:
        source.unlink()
        _fsync_dir(source.parent)

    async def _print(self, step: PrintStep, current: Path) -> StepOutput:
        device = self._devices.resolve(step.printer_name)
        if not current.exists():
            raise PermanentStepError(f"input file missing: {current}")
        job_id = await device.submit(
            current,
            copies=step.copies,
            duplex=step.duplex,
            options=step.options,
            timeout=step.timeout_sec,
        )
        log.info("print_job_accepted", path=str(current), device=step.printer_name, job=job_id)
        return StepOutput(StepOutcome.SUCCEEDED, current)

    async def _delete(self, step: DeleteStep, current: Path) -> StepOutput:
        if not os.path.lexists(current):
            log.info("delete_target_missing", path=str(current))
            return StepOutput(StepOutcome.SKIPPED, current)
        if step.secure:
            await asyncio.to_thread(secure_erase, current, step.secure_passes)
        else:
            await asyncio.to_thread(self._remove_source, current)
        return StepOutput(StepOutcome.SUCCEEDED, current)

    def _decide(self, step: DecisionStep, current: Path) -> StepOutput:
        if evaluate_decision(step, current):
            return StepOutput(StepOutcome.SUCCEEDED, current)
        return StepOutput(StepOutcome.HALTED, current)
