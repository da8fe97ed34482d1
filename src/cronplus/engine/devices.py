"""输出设备层

print 步骤的成功语义是"设备层已接受作业"，而不是物理打印完成。
未知或不可用的设备属于永久错误。
"""

import asyncio
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import structlog
from ulid import ULID

from ..exceptions import PermanentStepError, TransientIOError
from ..models.config import DeviceSettings

log = structlog.get_logger()

# lp 返回这些信息时说明目标队列不存在，重试无意义
_UNKNOWN_DESTINATION_MARKERS = ("unknown destination", "does not exist", "no such destination")


class OutputDevice(Protocol):
    """输出设备接口"""

    async def submit(
        self,
        path: Path,
        *,
        copies: int,
        duplex: bool,
        options: dict[str, str],
        timeout: float,
    ) -> str:
        """提交作业，返回设备侧作业标识"""
        ...


class LpDevice:
    """通过 CUPS lp 命令提交打印作业"""

    def __init__(self, queue: str, executable: str = "lp") -> None:
        self.queue = queue
        self.executable = executable

    def build_command(
        self,
        path: Path,
        *,
        copies: int,
        duplex: bool,
        options: dict[str, str],
    ) -> list[str]:
        args = [self.executable, "-d", self.queue, "-n", str(copies)]
        if duplex:
            args += ["-o", "sides=two-sided-long-edge"]
        for key, value in options.items():
            args += ["-o", f"{key}={value}"]
        args.append(str(path))
        return args

    async def submit(
        self,
        path: Path,
        *,
        copies: int,
        duplex: bool,
        options: dict[str, str],
        timeout: float,
    ) -> str:
        args = self.build_command(path, copies=copies, duplex=duplex, options=options)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentStepError(
                f"output device unavailable: {self.executable} not found"
            ) from e
        except OSError as e:
            raise TransientIOError(f"cannot start {self.executable}: {e}", e) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TransientIOError(f"print submission timed out after {timeout}s", e) from e

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            if any(marker in message.lower() for marker in _UNKNOWN_DESTINATION_MARKERS):
                raise PermanentStepError(f"unknown output device {self.queue}: {message}")
            raise TransientIOError(f"print submission failed: {message}")

        return stdout.decode(errors="replace").strip()


class SpoolDirectoryDevice:
    """把作业复制到一个目录（无打印机环境、测试使用）"""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def submit(
        self,
        path: Path,
        *,
        copies: int,
        duplex: bool,
        options: dict[str, str],
        timeout: float,
    ) -> str:
        job_id = str(ULID())

        def _spool() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            for n in range(1, copies + 1):
                target = self.directory / f"{job_id}-{n}-{path.name}"
                shutil.copyfile(path, target)

        try:
            await asyncio.wait_for(asyncio.to_thread(_spool), timeout=timeout)
        except TimeoutError as e:
            raise TransientIOError(f"spool submission timed out after {timeout}s", e) from e
        except FileNotFoundError:
            # 输入缺失由 StepExecutor 归为永久错误
            raise
        except OSError as e:
            raise TransientIOError(f"spool submission failed: {e}", e) from e
        return job_id


class DeviceRegistry:
    """按名称解析输出设备：显式注册 > 配置 > 本机 lp 队列"""

    def __init__(
        self,
        settings: dict[str, DeviceSettings] | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._settings = settings or {}
        self._which = which
        self._devices: dict[str, OutputDevice] = {}

    def register(self, name: str, device: OutputDevice) -> None:
        self._devices[name] = device

    def resolve(self, name: str) -> OutputDevice:
        """解析设备

        Raises:
            PermanentStepError: 设备未知且本机没有 lp
        """
        device = self._devices.get(name)
        if device is not None:
            return device

        settings = self._settings.get(name)
        if settings is not None:
            if settings.kind == "spool":
                if not settings.directory:
                    raise PermanentStepError(f"spool device {name} has no directory")
                device = SpoolDirectoryDevice(settings.directory)
            else:
                device = LpDevice(settings.queue or name)
            self._devices[name] = device
            return device

        if self._which("lp") is not None:
            device = LpDevice(name)
            self._devices[name] = device
            return device

        raise PermanentStepError(f"unknown or unavailable output device: {name}")
