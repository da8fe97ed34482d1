"""CronPlus 可观测性 -- structlog 配置 + 指标 sink"""

from .logging_config import setup_logging
from .metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink

__all__ = ["setup_logging", "MetricsSink", "NullMetricsSink", "PrometheusMetricsSink"]
