"""Minimal Prometheus text-format metrics for Stratus processes."""

from __future__ import annotations

from typing import Dict, Iterable, Optional


def _label_key(labels: Optional[dict[str, str]]) -> tuple[tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((str(key), str(value)) for key, value in labels.items()))


def _render_labels(key: tuple[tuple[str, str], ...], extra: Optional[tuple[str, str]] = None) -> str:
    pairs = list(key)
    if extra:
        pairs.append(extra)
    if not pairs:
        return ""
    body = ",".join(f'{name}="{value}"' for name, value in pairs)
    return "{" + body + "}"


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._values: Dict[tuple[tuple[str, str], ...], float] = {}

    def inc(self, amount: float = 1.0, labels: Optional[dict[str, str]] = None) -> None:
        key = _label_key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Optional[dict[str, str]] = None) -> float:
        return self._values.get(_label_key(labels), 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        if not self._values:
            lines.append(f"{self.name} 0.0")
        for key, value in sorted(self._values.items()):
            lines.append(f"{self.name}{_render_labels(key)} {value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: Iterable[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bucket in enumerate(self._buckets):
            if value <= bucket:
                self._counts[index] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket, count in zip(self._buckets, self._counts):
            lines.append(f"{self.name}_bucket{_render_labels((), ('le', str(bucket)))} {count}")
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        return self._metrics.setdefault(metric.name, metric)

    def render(self) -> str:
        return "".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()
