"""WatcherState Domain Model -- 按 task_id 持久化的监听状态"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import WatcherStatus


class FileSignature(BaseModel):
    """已发出事件的文件指纹"""

    size: int
    mtime_ns: int


class WatcherState(BaseModel):
    task_id: str = Field(description="所属任务 ID")
    directory: str = Field(description="监听目录")
    status: WatcherStatus = Field(default=WatcherStatus.ACTIVE, description="监听状态")
    last_scan_at: datetime | None = Field(default=None, description="最近扫描时间")
    error: str | None = Field(default=None, description="降级原因")
    emitted: dict[str, FileSignature] = Field(
        default_factory=dict,
        description="已被 Dispatcher 接收的路径及其指纹，重启后用于避免重复处理",
    )
    pending: dict[str, FileSignature] = Field(
        default_factory=dict,
        description="已发出但尚未被接收的路径，重启后重新发出",
    )
