"""
In-process metrics registry rendered in the Prometheus text format at /metrics.

One ``Metrics`` object is built per app and passed to whoever records into it.
Request handlers run on many tasks and threads, so every update takes a lock.
"""
from __future__ import annotations
import threading
from typing import Dict, List, Sequence, Tuple

LATENCY_BUCKETS_MS: Tuple[float, ...] = (1, 5, 10, 50, 100)


def _fmt(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else repr(float(v))


class Counter:
    def __init__(self, name: str, help: str, label: str | None = None) -> None:
        self.name = name
        self.help = help
        self.label = label
        self._values: Dict[str, float] = {}
        self._lock = threading.Lock()

    def inc(self, label_value: str = "", amount: float = 1) -> None:
        with self._lock:
            self._values[label_value] = self._values.get(label_value, 0) + amount

    def value(self, label_value: str = "") -> float:
        with self._lock:
            return self._values.get(label_value, 0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} counter"]
        with self._lock:
            items = sorted(self._values.items())
        for lv, v in items:
            if self.label:
                lines.append(f'{self.name}{{{self.label}="{lv}"}} {_fmt(v)}')
            else:
                lines.append(f"{self.name} {_fmt(v)}")
        return lines


class Gauge:
    def __init__(self, name: str, help: str) -> None:
        self.name = name
        self.help = help
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def value(self) -> float:
        with self._lock:
            return self._value

    def render(self) -> List[str]:
        return [
            f"# HELP {self.name} {self.help}",
            f"# TYPE {self.name} gauge",
            f"{self.name} {_fmt(self.value())}",
        ]


class Histogram:
    def __init__(self, name: str, help: str, buckets: Sequence[float] = LATENCY_BUCKETS_MS) -> None:
        self.name = name
        self.help = help
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for i, upper in enumerate(self.buckets):
                if value <= upper:
                    self._counts[i] += 1

    def count(self) -> int:
        with self._lock:
            return self._count

    def render(self) -> List[str]:
        with self._lock:
            counts, total, n = list(self._counts), self._sum, self._count
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} histogram"]
        for upper, c in zip(self.buckets, counts):
            lines.append(f'{self.name}_bucket{{le="{_fmt(upper)}"}} {c}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {n}')
        lines.append(f"{self.name}_sum {_fmt(total)}")
        lines.append(f"{self.name}_count {n}")
        return lines


class Metrics:
    def __init__(self, namespace: str = "statslogger") -> None:
        self.endpoint_hit = Counter(f"{namespace}_endpoint_hit_total", "hits per endpoint", label="endpoint")
        self.records_written = Counter(f"{namespace}_records_written_total", "records appended to the sink", label="kind")
        self.write_failures = Counter(f"{namespace}_write_failures_total", "records the sink rejected", label="kind")
        self.queue_depth = Gauge(f"{namespace}_writer_queue_depth", "records waiting for the writer")
        self.serve_latency = Histogram(f"{namespace}_serve_latency_ms", "http response latency in milliseconds")

    def render(self) -> str:
        lines: List[str] = []
        for m in (self.endpoint_hit, self.records_written, self.write_failures, self.queue_depth, self.serve_latency):
            lines.extend(m.render())
        return "\n".join(lines) + "\n"
