"""PrometheusMetricsSink 测试"""

from cronplus.observability import PrometheusMetricsSink


class TestPrometheusMetricsSink:
    def test_counters_and_gauge(self):
        sink = PrometheusMetricsSink()

        sink.run_started("scans")
        sink.run_started("scans")
        sink.run_finished("scans", "succeeded")
        sink.set_in_flight("scans", 1)

        registry = sink.registry
        assert registry.get_sample_value("cronplus_runs_started_total", {"task": "scans"}) == 2
        assert (
            registry.get_sample_value(
                "cronplus_runs_finished_total", {"task": "scans", "status": "succeeded"}
            )
            == 1
        )
        assert registry.get_sample_value("cronplus_runs_in_flight", {"task": "scans"}) == 1

    def test_instances_do_not_share_registry(self):
        first = PrometheusMetricsSink()
        second = PrometheusMetricsSink()

        first.run_started("a")

        value = second.registry.get_sample_value("cronplus_runs_started_total", {"task": "a"})
        assert value is None
