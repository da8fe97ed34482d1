"""TaskDefinition Domain Model

配置文档使用 camelCase 键（debounceMs、conflictStrategy ...），
模型字段使用 snake_case，两者通过 alias_generator 映射。
步骤类型是以 type 为判别字段的穷举联合，未知类型在加载时即被拒绝。
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import ConditionField, ConditionOperator, ConflictStrategy


class CamelModel(BaseModel):
    """camelCase 别名基类（同时接受 snake_case 字段名）"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class RetryPolicy(CamelModel):
    """步骤重试策略：首次失败后最多重试 max 次，退避从 backoffMs 开始逐次翻倍"""

    max: int = Field(default=3, ge=0, description="最大重试次数（不含首次执行）")
    backoff_ms: int = Field(default=1000, ge=0, description="首次重试前的等待毫秒数")


class WatchSpec(CamelModel):
    """目录监听配置"""

    directory: str = Field(min_length=1, description="监听目录")
    glob: str = Field(default="*", description="文件名匹配模式")
    debounce_ms: int = Field(default=500, ge=0, description="去抖窗口（毫秒）")
    stabilization_ms: int = Field(default=1000, ge=0, description="稳定判定时长（毫秒）")
    include_subdirectories: bool = Field(default=False, description="是否递归子目录")
    exclude_patterns: list[str] = Field(default_factory=list, description="排除的文件名模式")
    min_file_size_bytes: int | None = Field(default=None, ge=0, description="最小文件大小")
    max_file_size_bytes: int | None = Field(default=None, ge=0, description="最大文件大小")
    process_existing: bool = Field(
        default=True,
        description="Watcher 首次启动时是否处理目录中已存在的文件",
    )

    @model_validator(mode="after")
    def _check_size_range(self) -> "WatchSpec":
        if (
            self.min_file_size_bytes is not None
            and self.max_file_size_bytes is not None
            and self.min_file_size_bytes > self.max_file_size_bytes
        ):
            raise ValueError("minFileSizeBytes must not exceed maxFileSizeBytes")
        return self


class StepBase(CamelModel):
    """所有步骤共享的字段"""

    retry: RetryPolicy = Field(default_factory=RetryPolicy, description="重试策略")


class TransferStepBase(StepBase):
    """copy / move / archive 共享的目标参数"""

    destination: str = Field(min_length=1, description="目标目录")
    pattern: str = Field(default="", description="目标文件名通配模式，空串保留原名")
    atomic: bool = Field(default=True, description="先写临时文件再 rename 到位")
    verify_checksum: bool = Field(default=False, description="写入后校验 SHA-256")
    conflict_strategy: ConflictStrategy = Field(
        default=ConflictStrategy.RENAME,
        description="目标已存在时的处理策略",
    )

    @field_validator("pattern")
    @classmethod
    def _pattern_is_filename(cls, value: str) -> str:
        if "/" in value or "\\" in value:
            raise ValueError("destination pattern must not contain path separators")
        return value


class CopyStep(TransferStepBase):
    type: Literal["copy"] = "copy"


class MoveStep(TransferStepBase):
    type: Literal["move"] = "move"


class ArchiveStep(TransferStepBase):
    """归档：目标目录为 destination/<period>，period 由 run 开始时间格式化得到"""

    type: Literal["archive"] = "archive"
    period_format: str = Field(default="%Y-%m", min_length=1, description="strftime 子目录格式")
    compress: bool = Field(default=False, description="gzip 压缩归档文件")


class PrintStep(StepBase):
    type: Literal["print"] = "print"
    printer_name: str = Field(min_length=1, description="输出设备名")
    copies: int = Field(default=1, ge=1, description="份数")
    duplex: bool = Field(default=False, description="双面打印")
    timeout_sec: int = Field(default=60, ge=1, description="提交超时（秒）")
    options: dict[str, str] = Field(default_factory=dict, description="设备附加参数")


class DeleteStep(StepBase):
    type: Literal["delete"] = "delete"
    secure: bool = Field(default=False, description="删除前覆写文件内容")
    secure_passes: int = Field(default=3, ge=1, description="覆写遍数")


class Condition(CamelModel):
    """单条文件元数据条件"""

    field: ConditionField = Field(description="文件元数据字段")
    operator: ConditionOperator = Field(description="比较运算符")
    value: Any = Field(default=None, description="比较值")


class DecisionStep(StepBase):
    """条件判定：为假时 run 以 succeeded + skipped 结束"""

    type: Literal["decision"] = "decision"
    conditions: list[Condition] = Field(default_factory=list, description="条件列表")
    logic: Literal["all", "any"] = Field(default="all", description="条件组合方式")


StepDefinition = Annotated[
    CopyStep | MoveStep | ArchiveStep | PrintStep | DeleteStep | DecisionStep,
    Field(discriminator="type"),
]


class TaskDefinition(CamelModel):
    """任务定义：一个监听目录 + 一条有序步骤流水线"""

    id: str = Field(min_length=1, description="任务唯一标识")
    enabled: bool = Field(default=True, description="是否启用")
    watch: WatchSpec = Field(description="监听配置")
    pipeline: list[StepDefinition] = Field(min_length=1, description="有序步骤列表")
    concurrency_limit: int = Field(default=2, ge=1, description="任务内并发 run 上限")
