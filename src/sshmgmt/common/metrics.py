"""Minimal Prometheus text-format metrics shared by the control plane and node agents."""

from __future__ import annotations

from typing import Dict, TypeVar


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._values: Dict[str, float] = {}

    def inc(self, amount: float = 1.0, *, kind: str | None = None) -> None:
        key = kind or ""
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, kind: str | None = None) -> float:
        return self._values.get(kind or "", 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        if not self._values:
            lines.append(f"{self.name} 0.0")
        for kind, value in sorted(self._values.items()):
            if kind:
                lines.append(f'{self.name}{{kind="{kind}"}} {value}')
            else:
                lines.append(f"{self.name} {value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {bucket: 0 for bucket in self._buckets}
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


MetricT = TypeVar("MetricT", Counter, Histogram)


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, Counter | Histogram] = {}

    def register(self, metric: MetricT) -> MetricT:
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
