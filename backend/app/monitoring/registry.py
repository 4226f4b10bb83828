"""In-process metric registry rendered in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Sequence


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class Metric:
    """Counter or gauge keyed by a tuple of label values."""

    def __init__(self, kind: str, name: str, description: str, label_names: Sequence[str]) -> None:
        self.kind = kind
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def labels(self, *values: object) -> "BoundMetric":
        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expects labels {list(self.label_names)}, got {len(values)} values"
            )
        return BoundMetric(self, tuple(str(value) for value in values))

    def value(self, *values: object) -> float:
        return self._samples.get(tuple(str(value) for value in values), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        if self.kind == "counter" and amount < 0:
            raise ValueError("Counters cannot decrease")
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def _set(self, key: tuple[str, ...], value: float) -> None:
        if self.kind != "gauge":
            raise TypeError(f"Metric '{self.name}' is not a gauge")
        with self._lock:
            self._samples[key] = float(value)

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)

    def set(self, value: float) -> None:
        self.labels().set(value)

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
            return lines
        for key, amount in samples:
            block = ""
            if self.label_names:
                block = "{" + ",".join(
                    f'{name}="{_escape(value)}"' for name, value in zip(self.label_names, key)
                ) + "}"
            lines.append(f"{self.name}{block} {_format_value(amount)}")
        return lines


class BoundMetric:
    """Metric bound to concrete label values: ``metric.labels("a").inc()``."""

    def __init__(self, metric: Metric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if self._metric.kind != "gauge":
            raise TypeError("Only gauges support dec()")
        self._metric._add(self._key, -amount)

    def set(self, value: float) -> None:
        self._metric._set(self._key, value)


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = Lock()

    def _register(self, metric: Metric) -> Metric:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric
        return metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Metric:
        return self._register(Metric("counter", name, description, label_names))

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Metric:
        return self._register(Metric("gauge", name, description, label_names))

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


registry = MetricsRegistry()
