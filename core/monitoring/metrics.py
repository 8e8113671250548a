"""
Metrics Collector - Сбор метрик DVM
===================================

[METRICS] Типы метрик:
- Counter: монотонно возрастающий (jobs, publish attempts)
- Gauge: текущее значение (relays connected, queue depth)
- Histogram: распределение (inference latency)

[EXPORT] Форматы экспорта:
- Prometheus text format
- JSON (ресурс dvm://metrics MCP сервера)

[LABELS] Поддержка labels для группировки (reason, kind)
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class MetricValue:
    """Значение метрики."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class _Metric:
    """Общая часть метрик с labels."""

    kind = "untyped"

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._lock = threading.Lock()

    def _make_label_key(self, labels: Optional[Dict[str, str]]) -> Tuple:
        if not labels:
            return ()
        return tuple(labels.get(name, "") for name in self.label_names)

    def _labels_of(self, key: Tuple) -> Dict[str, str]:
        return dict(zip(self.label_names, key)) if self.label_names else {}


class Counter(_Metric):
    """
    Counter метрика - монотонно возрастающая.

    [USAGE]
    ```python
    dropped = Counter("jobs_dropped_total", "Dropped jobs", ["reason"])
    dropped.inc(labels={"reason": "duplicate"})
    ```
    """

    kind = "counter"

    def __init__(self, name: str, description: str = "", labels: Optional[List[str]] = None):
        super().__init__(name, description, labels)
        self._values: Dict[Tuple, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        if amount < 0:
            raise ValueError("Counter can only increase")
        key = self._make_label_key(labels)
        with self._lock:
            self._values[key] += amount

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        return self._values.get(self._make_label_key(labels), 0.0)

    def get_all(self) -> List[MetricValue]:
        with self._lock:
            return [
                MetricValue(value=value, labels=self._labels_of(key))
                for key, value in self._values.items()
            ]


class Gauge(Counter):
    """Gauge метрика - текущее значение (может уменьшаться)."""

    kind = "gauge"

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._make_label_key(labels)
        with self._lock:
            self._values[key] += amount

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._make_label_key(labels)
        with self._lock:
            self._values[key] = value

    def dec(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self.inc(-amount, labels)


class Histogram(_Metric):
    """
    Histogram метрика - распределение значений.

    [USAGE]
    ```python
    latency = Histogram("inference_seconds", buckets=(0.5, 1, 5, 30))
    with latency.time():
        await provider.complete(...)
    ```
    """

    kind = "histogram"
    DEFAULT_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._bucket_counts: Dict[Tuple, Dict[float, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._sums: Dict[Tuple, float] = defaultdict(float)
        self._counts: Dict[Tuple, int] = defaultdict(int)

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._make_label_key(labels)
        with self._lock:
            self._sums[key] += value
            self._counts[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[key][bucket] += 1

    def time(self, labels: Optional[Dict[str, str]] = None) -> "_HistogramTimer":
        return _HistogramTimer(self, labels)

    def get_stats(self, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        key = self._make_label_key(labels)
        with self._lock:
            count = self._counts.get(key, 0)
            total = self._sums.get(key, 0.0)
            return {
                "count": count,
                "sum": total,
                "avg": total / count if count > 0 else 0,
                "buckets": dict(self._bucket_counts.get(key, {})),
            }

    def label_keys(self) -> List[Tuple]:
        with self._lock:
            return list(self._counts)


class _HistogramTimer:
    """Context manager для Histogram.time()."""

    def __init__(self, histogram: Histogram, labels: Optional[Dict[str, str]]):
        self.histogram = histogram
        self.labels = labels
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.histogram.observe(time.monotonic() - self.start_time, self.labels)


class MetricsCollector:
    """
    Централизованный сборщик метрик.

    Имена передаются без префикса: collector.inc("jobs_received_total")
    обновляет метрику dvm_jobs_received_total. Обновление
    незарегистрированной метрики игнорируется.

    [USAGE]
    ```python
    metrics = MetricsCollector(prefix="dvm")
    metrics.inc("jobs_dropped_total", labels={"reason": "unauthorized"})
    metrics.set("relays_connected", 4)
    print(metrics.export_prometheus())
    ```
    """

    def __init__(self, prefix: str = "dvm"):
        self.prefix = prefix
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._register_defaults()

    def _full(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def counter(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Counter:
        full_name = self._full(name)
        if full_name not in self._counters:
            self._counters[full_name] = Counter(full_name, description, labels)
        return self._counters[full_name]

    def gauge(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Gauge:
        full_name = self._full(name)
        if full_name not in self._gauges:
            self._gauges[full_name] = Gauge(full_name, description, labels)
        return self._gauges[full_name]

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        full_name = self._full(name)
        if full_name not in self._histograms:
            self._histograms[full_name] = Histogram(full_name, description, labels, buckets)
        return self._histograms[full_name]

    def inc(self, name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        counter = self._counters.get(self._full(name))
        if counter:
            counter.inc(amount, labels)

    def set(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        gauge = self._gauges.get(self._full(name))
        if gauge:
            gauge.set(value, labels)

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        histogram = self._histograms.get(self._full(name))
        if histogram:
            histogram.observe(value, labels)

    def get(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Значение counter или gauge (0.0 если метрики нет)."""
        full_name = self._full(name)
        metric = self._counters.get(full_name) or self._gauges.get(full_name)
        return metric.get(labels) if metric else 0.0

    def export_prometheus(self) -> str:
        """Экспорт в Prometheus text format."""
        lines: List[str] = []

        for registry in (self._counters, self._gauges):
            for name, metric in registry.items():
                self._header(lines, metric)
                for mv in metric.get_all():
                    lines.append(f"{name}{self._format_labels(mv.labels)} {mv.value}")

        for name, histogram in self._histograms.items():
            self._header(lines, histogram)
            for key in histogram.label_keys():
                labels = histogram._labels_of(key)
                stats = histogram.get_stats(labels)
                cumulative = 0
                for bucket in histogram.buckets:
                    cumulative = stats["buckets"].get(bucket, 0)
                    bucket_labels = dict(labels, le=str(bucket))
                    lines.append(f"{name}_bucket{self._format_labels(bucket_labels)} {cumulative}")
                inf_labels = dict(labels, le="+Inf")
                lines.append(f"{name}_bucket{self._format_labels(inf_labels)} {stats['count']}")
                lines.append(f"{name}_sum{self._format_labels(labels)} {stats['sum']}")
                lines.append(f"{name}_count{self._format_labels(labels)} {stats['count']}")

        return "\n".join(lines)

    def export_json(self) -> Dict[str, Any]:
        """Экспорт в JSON."""
        result: Dict[str, Any] = {
            "timestamp": time.time(),
            "counters": {},
            "gauges": {},
            "histograms": {},
        }

        for section, registry in (("counters", self._counters), ("gauges", self._gauges)):
            for name, metric in registry.items():
                values = metric.get_all()
                if len(values) == 1 and not values[0].labels:
                    result[section][name] = values[0].value
                else:
                    result[section][name] = [
                        {"value": v.value, "labels": v.labels} for v in values
                    ]

        for name, histogram in self._histograms.items():
            result["histograms"][name] = histogram.get_stats()

        return result

    @staticmethod
    def _header(lines: List[str], metric: _Metric) -> None:
        if metric.description:
            lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {metric.kind}")

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in labels.items()]
        return "{" + ",".join(parts) + "}"

    def _register_defaults(self) -> None:
        # Jobs
        self.counter("jobs_received_total", "Job requests delivered by relays")
        self.counter("jobs_accepted_total", "Job requests queued for processing")
        self.counter("jobs_dropped_total", "Job requests dropped before processing", ["reason"])
        self.counter("jobs_succeeded_total", "Jobs completed with a published result")
        self.counter("jobs_failed_total", "Jobs finished with error feedback")

        # Publishing
        self.counter("publish_attempts_total", "Publish attempts across the pool", ["kind"])
        self.counter("publish_rate_limited_total", "Publish attempts rejected as rate limited", ["kind"])
        self.counter("publish_failures_total", "Events not published after all attempts", ["kind"])

        # State
        self.gauge("relays_connected", "Currently connected relays")
        self.gauge("queue_depth", "Jobs waiting in the queue")

        # Performance
        self.histogram("inference_seconds", "Provider call latency")
