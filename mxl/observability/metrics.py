"""
MxL Metrics Collector
Counters, gauges and histogram sums/counts exposed in flat text exposition
format on GET /metrics.
"""

import threading
from typing import Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _format_labels(labels: LabelKey) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        '{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n"))
        for k, v in labels
    )
    return "{" + rendered + "}"


class MetricsCollector:
    """Thread-safe in-process registry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, LabelKey], float] = {}
        self._gauges: Dict[Tuple[str, LabelKey], float] = {}
        self._histograms: Dict[Tuple[str, LabelKey], List[float]] = {}

    def increment(self, name: str, labels: Optional[Dict[str, str]] = None, amount: float = 1) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._gauges[(name, _label_key(labels))] = value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record a histogram observation (exposed as _sum and _count)."""
        key = (name, _label_key(labels))
        with self._lock:
            sums = self._histograms.setdefault(key, [0.0, 0.0])
            sums[0] += value
            sums[1] += 1

    def counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get((name, _label_key(labels)), 0)

    def gauge_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get((name, _label_key(labels)))

    def render(self) -> str:
        lines: List[str] = []
        with self._lock:
            for (name, labels), value in sorted(self._counters.items()):
                lines.append(f"{name}{_format_labels(labels)} {_num(value)}")
            for (name, labels), value in sorted(self._gauges.items()):
                lines.append(f"{name}{_format_labels(labels)} {_num(value)}")
            for (name, labels), (total, count) in sorted(self._histograms.items()):
                lines.append(f"{name}_sum{_format_labels(labels)} {_num(total)}")
                lines.append(f"{name}_count{_format_labels(labels)} {_num(count)}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


def _num(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))
