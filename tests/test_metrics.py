"""Tests for the metrics registry."""

import pytest

from machinator.metrics import MetricsRegistry


def test_counters_and_gauges_render():
    registry = MetricsRegistry()
    registry.define("jobs_total", "Jobs run.", "counter")
    registry.define("queue_depth", "Items waiting.", "gauge")

    registry.inc_counter("jobs_total", labels={"model": "b"})
    registry.inc_counter("jobs_total", labels={"model": "a"})
    registry.inc_counter("jobs_total", value=2, labels={"model": "a"})
    registry.set_gauge("queue_depth", 4)
    registry.set_gauge("queue_depth", 2)

    assert registry.counter_value("jobs_total", {"model": "a"}) == 3
    assert registry.gauge_value("queue_depth") == 2
    assert registry.render_prometheus() == (
        "# HELP jobs_total Jobs run.\n"
        "# TYPE jobs_total counter\n"
        'jobs_total{model="a"} 3.0\n'
        'jobs_total{model="b"} 1.0\n'
        "# HELP queue_depth Items waiting.\n"
        "# TYPE queue_depth gauge\n"
        "queue_depth 2\n"
    )


def test_reset_clears_values_but_keeps_definitions():
    registry = MetricsRegistry()
    registry.define("jobs_total", "Jobs run.", "counter")
    registry.inc_counter("jobs_total")

    registry.reset()

    assert registry.counter_value("jobs_total") == 0.0
    assert "# TYPE jobs_total counter" in registry.render_prometheus()


def test_unknown_metric_type_rejected():
    with pytest.raises(ValueError):
        MetricsRegistry().define("x", "X.", "histogram")
