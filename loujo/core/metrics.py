"""
In-process counters for webhook reconciliation, exported in Prometheus
text format at /metrics.

Counters are process-local and reset on restart; scrape them frequently.
"""

import threading
from typing import Dict, List, Optional, Sequence, Tuple

Labels = Optional[Dict[str, str]]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Counter:
    """Monotonic counter keyed by an ordered tuple of label values."""

    def __init__(self, name: str, help_text: str = "", label_names: Sequence[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._series: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Labels) -> Tuple[str, ...]:
        given = labels or {}
        unknown = set(given) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(given.get(name, "")) for name in self.label_names)

    def inc(self, labels: Labels = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + amount

    def value(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, 0.0)

    def reset(self) -> None:
        with self._lock:
            self._series.clear()

    def render(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            series = sorted(self._series.items())
        for key, total in series:
            suffix = ""
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                suffix = "{" + pairs + "}"
            lines.append(f"{self.name}{suffix} {float(total)}")
        return lines


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str = "", label_names: Sequence[str] = ()) -> Counter:
        with self._lock:
            existing = self._counters.get(name)
            if existing is None:
                existing = self._counters[name] = Counter(name, help_text, label_names)
            return existing

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self._counters.values())
        return "\n".join(line for c in counters for line in c.render()) + "\n"

    def reset(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

webhook_events_total = METRICS.counter(
    "webhook_events_total",
    "Provider events processed, by provider and reconciliation outcome.",
    ("provider", "outcome"),
)
reconcile_conflicts_total = METRICS.counter(
    "reconcile_conflicts_total",
    "Optimistic write conflicts retried while reconciling.",
)
claims_sync_failures_total = METRICS.counter(
    "claims_sync_failures_total",
    "Failed pushes of custom claims to the identity provider.",
)
