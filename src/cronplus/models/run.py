"""PipelineRun Domain Model

run_id 使用 ULID 格式，时间有序。
同一 (task_id, source_path) 任意时刻至多一个非终态 run。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import RunEventType, RunStatus, StepOutcome, StepType


class FileEvent(BaseModel):
    """Watcher 产出的就绪文件事件"""

    task_id: str = Field(description="所属任务 ID")
    source_path: str = Field(description="源文件绝对路径")
    detected_at: datetime = Field(description="首次发现时间")
    stable_at: datetime | None = Field(default=None, description="判定稳定的时间")


class StepResult(BaseModel):
    """单个步骤的执行记录"""

    step_index: int = Field(description="步骤序号（从 0 开始）")
    type: StepType = Field(description="步骤类型")
    attempts: int = Field(default=0, description="实际执行次数（含首次）")
    outcome: StepOutcome = Field(description="执行结果")
    resulting_path: str | None = Field(default=None, description="步骤产出的文件路径")
    error_message: str | None = Field(default=None, description="错误信息")


class PipelineRun(BaseModel):
    """一次完整的流水线执行"""

    run_id: str = Field(description="唯一标识，ULID 格式")
    task_id: str = Field(description="所属任务 ID")
    file_event: FileEvent = Field(description="触发事件")
    started_at: datetime = Field(description="开始时间")
    completed_at: datetime | None = Field(default=None, description="结束时间")
    status: RunStatus = Field(default=RunStatus.PENDING, description="当前状态")
    step_results: list[StepResult] = Field(default_factory=list, description="有序步骤记录")
    error_message: str | None = Field(default=None, description="失败原因")
    failed_step_index: int | None = Field(default=None, description="失败步骤序号")
    skipped: bool = Field(default=False, description="decision 为假提前结束")
    current_path: str | None = Field(default=None, description="文件当前位置")
    dead_letter_path: str | None = Field(default=None, description="死信 sidecar 路径")

    @property
    def source_path(self) -> str:
        return self.file_event.source_path


class RunEvent(BaseModel):
    """run_events 表记录（append-only）"""

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    run_id: str = Field(description="关联的 run ID")
    run_seq: int = Field(description="run 内序号，严格单调递增")
    ts: datetime = Field(description="事件时间戳")
    type: RunEventType = Field(description="事件类型")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")


class RunFilter(BaseModel):
    """run 列表查询条件（供外部报表使用）"""

    task_id: str | None = None
    status: RunStatus | None = None
    source_path: str | None = None
    started_after: datetime | None = None
    limit: int | None = Field(default=100, ge=1)
