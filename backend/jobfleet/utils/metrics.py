"""
Basic in-memory metrics counters for observability.

Provides simple counters for key orchestration metrics:
- heartbeats_total / heartbeat_duration_seconds: heartbeat handling
- jobs_assigned_total / assignment_conflicts_total: assignment races
- workers_lost_total / jobs_released_total: lease-sweep reclaim activity
- sweep_failures_total: records the sweep had to skip

One collector is created by the composition root and handed to the
orchestrator, the sweeper and the ``/api/metrics`` endpoint.

Histograms are observed on every heartbeat, so only the most recent
``window`` samples are kept per key.  Count, sum, min and max are running
totals over every observation; p50/p95 come from the window.
"""
import re as _re
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any
import logging

logger = logging.getLogger("jobfleet.metrics")

HISTOGRAM_WINDOW = 1024


@dataclass
class _Totals:
    count: int = 0
    sum: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")

    def add(self, value: float) -> None:
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)


def _quantile(sorted_vals: list[float], q: float) -> float:
    return sorted_vals[max(0, int(len(sorted_vals) * q) - 1)]


class MetricsCollector:
    """In-memory counters and windowed histograms."""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        if window < 1:
            raise ValueError(f"histogram window must be at least 1 (got {window})")
        self.window = window
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=self.window))
        self._totals: dict[str, _Totals] = defaultdict(_Totals)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        key = self._build_key(name, labels)
        self.counters[key] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        key = self._build_key(name, labels)
        self.histograms[key].append(value)
        self._totals[key].add(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        key = self._build_key(name, labels)
        return self.counters.get(key, 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """Count, sum, min, max and avg over every observation; p50 and p95 over the window."""
        key = self._build_key(name, labels)
        totals = self._totals.get(key)
        window = self.histograms.get(key)
        if totals is None or not window:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        sorted_vals = sorted(window)
        return {
            "count": totals.count,
            "sum": totals.sum,
            "min": totals.min,
            "max": totals.max,
            "avg": totals.sum / totals.count,
            "p50": _quantile(sorted_vals, 0.50),
            "p95": _quantile(sorted_vals, 0.95),
        }

    def get_all_metrics(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: self.get_histogram_stats(k) for k in list(self.histograms.keys())},
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()
        self._totals.clear()

    @staticmethod
    def _build_key(name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


class FleetMetrics(MetricsCollector):
    """Collector with the orchestration-specific recorders."""

    def record_heartbeat(self, duration_seconds: float, assigned: int):
        self.increment_counter("heartbeats_total")
        self.observe_histogram("heartbeat_duration_seconds", duration_seconds)
        if assigned:
            self.increment_counter("jobs_assigned_total", value=assigned)

    def record_assignment_conflict(self):
        self.increment_counter("assignment_conflicts_total")

    def record_worker_lost(self):
        self.increment_counter("workers_lost_total")

    def record_job_released(self, outcome: str):
        """
        Record a job taken back from a lost worker.

        Args:
            outcome: State the job was released into (created, cancelled)
        """
        self.increment_counter("jobs_released_total", labels={"outcome": outcome})

    def record_sweep_failure(self, record_type: str):
        self.increment_counter("sweep_failures_total", labels={"record": record_type})
        logger.debug("Sweep skipped a %s record after a failure", record_type)


def _parse_metric_key(key: str) -> tuple[str, str]:
    """Split an internal metric key into (base_name, prometheus_label_string).

    Internal keys are produced by ``MetricsCollector._build_key`` in the form
    ``name`` or ``name{k1=v1,k2=v2}`` (values are unquoted).
    """
    m = _re.match(r'^([^{]+)(?:\{(.+)\})?$', key)
    if not m:
        return key, ""
    base_name = m.group(1)
    raw_labels = m.group(2) or ""
    if not raw_labels:
        return base_name, ""
    label_parts: list[str] = []
    for pair in raw_labels.split(","):
        if "=" in pair:
            k, v = pair.split("=", 1)
            label_parts.append(f'{k.strip()}="{v.strip()}"')
    label_str = "{" + ",".join(label_parts) + "}" if label_parts else ""
    return base_name, label_str


def _append_quantile_label(label_str: str, quantile: str) -> str:
    """Merge a quantile key-value into an existing Prometheus label block."""
    q_pair = f'quantile="{quantile}"'
    if label_str:
        return label_str[:-1] + "," + q_pair + "}"
    return "{" + q_pair + "}"


def to_prometheus_text(collector: MetricsCollector) -> str:
    """Render *collector* as Prometheus text exposition format.

    Each metric family has exactly one ``# TYPE`` line; counters with
    different label sets are grouped under the same family.  Histograms are
    rendered as summaries (count, sum, p50, p95, max).
    """
    summary = collector.get_all_metrics()
    lines: list[str] = []

    # ── Counters ───────────────────────────────────────────────────────────
    counter_families: dict[str, list[tuple[str, int]]] = defaultdict(list)
    for key, val in summary.get("counters", {}).items():
        base_name, label_str = _parse_metric_key(key)
        counter_families["jobfleet_" + base_name].append((label_str, val))
    for prom_name, entries in counter_families.items():
        lines.append(f"# TYPE {prom_name} counter")
        for label_str, val in entries:
            lines.append(f"{prom_name}{label_str} {val}")

    # ── Histograms (rendered as Prometheus summaries) ──────────────────────
    histogram_families: dict[str, list[tuple[str, dict]]] = defaultdict(list)
    for key, stats in summary.get("histograms", {}).items():
        base_name, label_str = _parse_metric_key(key)
        histogram_families["jobfleet_" + base_name].append((label_str, stats))
    for prom_name, entries in histogram_families.items():
        lines.append(f"# TYPE {prom_name} summary")
        for label_str, stats in entries:
            lines.append(f"{prom_name}_count{label_str} {stats['count']}")
            lines.append(f"{prom_name}_sum{label_str} {stats['sum']:.6f}")
            lines.append(f"{prom_name}{_append_quantile_label(label_str, '0.5')} {stats['p50']:.6f}")
            lines.append(f"{prom_name}{_append_quantile_label(label_str, '0.95')} {stats['p95']:.6f}")
            lines.append(f"{prom_name}{_append_quantile_label(label_str, '1.0')} {stats['max']:.6f}")
    return "\n".join(lines) + "\n"
