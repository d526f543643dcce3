"""Simple in-memory metrics registry with Prometheus text output."""

from __future__ import annotations

import threading


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: dict[str, tuple[str, str]] = {}
        self._counters: dict[tuple[str, str], float] = {}
        self._gauges: dict[tuple[str, str], float] = {}

    def define(self, name: str, help_text: str, metric_type: str) -> None:
        if metric_type not in ("counter", "gauge"):
            raise ValueError(f"unsupported metric type: {metric_type}")
        with self._lock:
            self._definitions[name] = (help_text, metric_type)

    def inc_counter(self, name: str, value: float = 1.0, labels: dict | None = None) -> None:
        key = (name, _label_str(labels))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def set_gauge(self, name: str, value: float, labels: dict | None = None) -> None:
        key = (name, _label_str(labels))
        with self._lock:
            self._gauges[key] = value

    def counter_value(self, name: str, labels: dict | None = None) -> float:
        """Read back one counter; used by tests to assert on recorded events."""
        with self._lock:
            return self._counters.get((name, _label_str(labels)), 0.0)

    def gauge_value(self, name: str, labels: dict | None = None) -> float | None:
        """Read back one gauge, or None if it was never set."""
        with self._lock:
            return self._gauges.get((name, _label_str(labels)))

    def reset(self) -> None:
        """Drop recorded values but keep definitions, so tests start from zero."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()

    def render_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            definitions = dict(self._definitions)
            values = {"counter": dict(self._counters), "gauge": dict(self._gauges)}

        for name, (help_text, metric_type) in definitions.items():
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {metric_type}")
            for (metric_name, label_str), value in sorted(values[metric_type].items()):
                if metric_name == name:
                    lines.append(f"{metric_name}{label_str} {value}")

        return "\n".join(lines) + "\n"


def _label_str(labels: dict | None) -> str:
    if not labels:
        return ""
    items = sorted((str(k), str(v)) for k, v in labels.items())
    inner = ",".join(f'{k}="{v}"' for k, v in items)
    return f"{{{inner}}}"


metrics = MetricsRegistry()

metrics.define("machinator_assignments_total", "Tasks assigned to agents by model.", "counter")
metrics.define(
    "machinator_provision_failures_total", "Failed workspace provisioning attempts.", "counter"
)
metrics.define("machinator_quota_refresh_total", "Quota refreshes by outcome.", "counter")
metrics.define("machinator_agent_timeouts_total", "Assignments expired by the watcher.", "counter")
metrics.define("machinator_quota_total", "Summed remaining quota fraction per model.", "gauge")
