"""配置文档模型

tasks 保留为原始字典，由 load_config 逐个校验，
单个任务无效不影响其他任务加载。
"""

from typing import Any, Literal

from pydantic import Field, field_validator

from .enums import DeadLetterLayout
from .task import CamelModel, RetryPolicy


class LoggingSettings(CamelModel):
    level: str = Field(default="info", description="日志级别")

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.lower() not in {"debug", "info", "warning", "error", "critical"}:
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class MetricsSettings(CamelModel):
    enable_prometheus: bool = Field(default=False, description="是否暴露 Prometheus 指标")
    listen: str = Field(default="127.0.0.1:9090", description="指标监听地址 host:port")

    @field_validator("listen")
    @classmethod
    def _host_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must be host:port")
        return value


class DeviceSettings(CamelModel):
    """命名输出设备"""

    kind: Literal["lp", "spool"] = Field(description="设备实现")
    queue: str | None = Field(default=None, description="lp 打印队列名，缺省为设备名")
    directory: str | None = Field(default=None, description="spool 目标目录")

    @field_validator("directory")
    @classmethod
    def _non_empty(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("directory must not be empty")
        return value


class RuntimeSettings(CamelModel):
    max_concurrent_per_task: int = Field(default=2, ge=1, description="单任务并发上限")
    state_db_path: str = Field(default="data/cronplus.db", description="SQLite 路径")
    dead_letter_dir: str = Field(default="data/dead-letter", description="死信目录")
    dead_letter_layout: DeadLetterLayout = Field(
        default=DeadLetterLayout.RUN,
        description="死信目录布局 flat / task / run",
    )
    poll_interval_ms: int = Field(default=250, ge=10, description="目录轮询间隔")
    state_store_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max=3, backoff_ms=100),
        description="持久化失败时的重试策略",
    )
    devices: dict[str, DeviceSettings] = Field(default_factory=dict, description="输出设备")


class ConfigDocument(CamelModel):
    version: int = Field(default=1, description="配置版本")
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    tasks: list[Any] = Field(default_factory=list, description="原始任务定义")

    @field_validator("version")
    @classmethod
    def _supported_version(cls, value: int) -> int:
        if value != 1:
            raise ValueError(f"unsupported config version: {value}")
        return value
