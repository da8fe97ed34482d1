"""指标 sink

引擎只调用 MetricsSink 接口；暴露格式由 prometheus_client 负责。
"""

from typing import Protocol

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

log = structlog.get_logger()


class MetricsSink(Protocol):
    """引擎依赖的指标接口"""

    def run_started(self, task_id: str) -> None: ...

    def run_finished(self, task_id: str, status: str) -> None: ...

    def set_in_flight(self, task_id: str, count: int) -> None: ...


class NullMetricsSink:
    """未启用指标时的空实现"""

    def run_started(self, task_id: str) -> None:
        pass

    def run_finished(self, task_id: str, status: str) -> None:
        pass

    def set_in_flight(self, task_id: str, count: int) -> None:
        pass


class PrometheusMetricsSink:
    """Prometheus 指标实现，使用独立 registry 以便多实例共存"""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.runs_started = Counter(
            "cronplus_runs_started_total",
            "Pipeline runs admitted",
            ["task"],
            registry=self.registry,
        )
        self.runs_finished = Counter(
            "cronplus_runs_finished_total",
            "Pipeline runs reaching a terminal status",
            ["task", "status"],
            registry=self.registry,
        )
        self.runs_in_flight = Gauge(
            "cronplus_runs_in_flight",
            "Pipeline runs currently executing",
            ["task"],
            registry=self.registry,
        )

    def run_started(self, task_id: str) -> None:
        self.runs_started.labels(task=task_id).inc()

    def run_finished(self, task_id: str, status: str) -> None:
        self.runs_finished.labels(task=task_id, status=status).inc()

    def set_in_flight(self, task_id: str, count: int) -> None:
        self.runs_in_flight.labels(task=task_id).set(count)

    def serve(self, listen: str) -> None:
        """在 host:port 上启动 /metrics HTTP 服务（后台线程）"""
        host, _, port = listen.rpartition(":")
        start_http_server(int(port), addr=host, registry=self.registry)
        log.info("metrics_server_started", listen=listen)
