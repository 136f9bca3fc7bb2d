"""Metrics utilities for exposing Prometheus-formatted data."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Tuple

DEFAULT_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]

INF_LABEL = 'le="+Inf"'

LabelValues = Tuple[str, ...]


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    return [start * factor**i for i in range(count)]


def _format_labels(names: Tuple[str, ...], values: LabelValues, extra: str = "") -> str:
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values)]
    if extra:
        pairs.append(extra)
    if not pairs:
        return ""
    return "{" + ",".join(pairs) + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, object]) -> LabelValues:
        if set(labels) != set(self.labelnames):
            raise ValueError(f"{self.name} expects labels {self.labelnames}, got {tuple(labels)}")
        return tuple(str(labels[name]) for name in self.labelnames)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]


class _BoundCounter:
    def __init__(self, parent: "Counter", key: LabelValues) -> None:
        self._parent = parent
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        self._parent._add(self._key, amount)


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        super().__init__(name, description, labelnames)
        self._values: Dict[LabelValues, float] = {}

    def labels(self, **labels: object) -> _BoundCounter:
        return _BoundCounter(self, self._key(labels))

    def inc(self, amount: float = 1.0) -> None:
        self._add(self._key({}), amount)

    def _add(self, key: LabelValues, amount: float) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: object) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def render(self) -> str:
        lines = self._header()
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            lines.append(f"{self.name}{_format_labels(self.labelnames, key)} {value}")
        return "\n".join(lines) + "\n"


class _BoundGauge:
    def __init__(self, parent: "Gauge", key: LabelValues) -> None:
        self._parent = parent
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        self._parent._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        self._parent._add(self._key, -amount)

    def set(self, value: float) -> None:
        with self._parent._lock:
            self._parent._values[self._key] = value


class Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        super().__init__(name, description, labelnames)
        self._values: Dict[LabelValues, float] = {}

    def labels(self, **labels: object) -> _BoundGauge:
        return _BoundGauge(self, self._key(labels))

    def set(self, value: float) -> None:
        self.labels().set(value)

    def _add(self, key: LabelValues, amount: float) -> None:
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: object) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def render(self) -> str:
        lines = self._header()
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            lines.append(f"{self.name}{_format_labels(self.labelnames, key)} {value}")
        return "\n".join(lines) + "\n"


class _HistogramSeries:
    __slots__ = ("counts", "sum", "count")

    def __init__(self, size: int) -> None:
        self.counts = [0] * size
        self.sum = 0.0
        self.count = 0


class _BoundHistogram:
    def __init__(self, parent: "Histogram", key: LabelValues) -> None:
        self._parent = parent
        self._key = key

    def observe(self, value: float) -> None:
        self._parent._observe(self._key, value)


class Histogram(_Metric):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        buckets: list[float] | None = None,
        description: str = "",
        labelnames: Iterable[str] = (),
    ) -> None:
        super().__init__(name, description, labelnames)
        self._buckets = sorted(buckets or DEFAULT_BUCKETS)
        self._series: Dict[LabelValues, _HistogramSeries] = {}

    def labels(self, **labels: object) -> _BoundHistogram:
        return _BoundHistogram(self, self._key(labels))

    def observe(self, value: float) -> None:
        self._observe(self._key({}), value)

    def _observe(self, key: LabelValues, value: float) -> None:
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _HistogramSeries(len(self._buckets))
            series.count += 1
            series.sum += value
            for index, bound in enumerate(self._buckets):
                if value <= bound:
                    series.counts[index] += 1

    def count(self, **labels: object) -> int:
        with self._lock:
            series = self._series.get(self._key(labels))
            return series.count if series else 0

    def render(self) -> str:
        lines = self._header()
        with self._lock:
            items = sorted(
                (key, list(series.counts), series.sum, series.count) for key, series in self._series.items()
            )
        for key, counts, total, count in items:
            # bucket counts are already cumulative
            for bound, bucket_count in zip(self._buckets, counts):
                bucket_labels = _format_labels(self.labelnames, key, f'le="{bound}"')
                lines.append(f"{self.name}_bucket{bucket_labels} {bucket_count}")
            inf_labels = _format_labels(self.labelnames, key, INF_LABEL)
            lines.append(f"{self.name}_bucket{inf_labels} {count}")
            lines.append(f"{self.name}_sum{_format_labels(self.labelnames, key)} {total}")
            lines.append(f"{self.name}_count{_format_labels(self.labelnames, key)} {count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric):
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric {metric.name} already registered")
            self._metrics[metric.name] = metric
        return metric

    def get(self, name: str) -> _Metric:
        return self._metrics[name]

    def render(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        return "\n".join(metric.render() for metric in metrics) + "\n"
