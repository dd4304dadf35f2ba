"""In-process metrics for RoutineGate.

Counters and gauges render in Prometheus text format so an embedding service
can expose them on its own scrape endpoint.

Metrics collected:
    - routinegate_transactions_active: Gauge of registry-owned transactions
    - routinegate_transactions_total: Counter of finished transactions by outcome
    - routinegate_statements_rejected_total: Counter of admission gate rejections
    - routinegate_deploys_total: Counter of deploys by outcome
    - routinegate_rollbacks_total: Counter of routine rollbacks by outcome
    - routinegate_audit_flush_failures_total: Counter of failed audit flushes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


def _render_samples(
    name: str, labels: tuple[str, ...], values: dict[tuple[str, ...], float]
) -> list[str]:
    if not values:
        return [f"{name} 0"]
    lines = []
    for label_values, value in sorted(values.items()):
        if labels and label_values:
            label_str = ",".join(
                f'{k}="{v}"' for k, v in zip(labels, label_values, strict=False)
            )
            lines.append(f"{name}{{{label_str}}} {value}")
        else:
            lines.append(f"{name} {value}")
    return lines


@dataclass
class Counter:
    """Thread-safe monotonically increasing metric."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[tuple[str, ...], float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        header = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        with self._lock:
            return "\n".join(header + _render_samples(self.name, self.labels, self._values))


@dataclass
class Gauge:
    """Thread-safe metric that can go up and down."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[tuple[str, ...], float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def set(self, value: float, *label_values: str) -> None:
        with self._lock:
            self._values[label_values] = value

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def dec(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) - amount

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        header = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} gauge"]
        with self._lock:
            return "\n".join(header + _render_samples(self.name, self.labels, self._values))


class MetricsRegistry:
    """Registry for all RoutineGate metrics."""

    def __init__(self) -> None:
        self.transactions_active = Gauge(
            name="routinegate_transactions_active",
            description="Number of transactions currently owned by the registry",
        )
        self.transactions_total = Counter(
            name="routinegate_transactions_total",
            description="Total number of finished transactions",
            labels=("outcome",),  # committed, rolled_back, timed_out
        )
        self.statements_rejected_total = Counter(
            name="routinegate_statements_rejected_total",
            description="Total number of statements rejected by the admission gate",
            labels=("operation",),
        )
        self.deploys_total = Counter(
            name="routinegate_deploys_total",
            description="Total number of routine deploys",
            labels=("outcome",),
        )
        self.rollbacks_total = Counter(
            name="routinegate_rollbacks_total",
            description="Total number of routine rollbacks",
            labels=("outcome",),
        )
        self.audit_flush_failures_total = Counter(
            name="routinegate_audit_flush_failures_total",
            description="Total number of audit flushes that failed and were requeued",
        )

    def collect_all(self) -> str:
        """Collect all metrics in Prometheus format."""
        metrics = [
            self.transactions_active.collect(),
            self.transactions_total.collect(),
            self.statements_rejected_total.collect(),
            self.deploys_total.collect(),
            self.rollbacks_total.collect(),
            self.audit_flush_failures_total.collect(),
        ]
        return "\n\n".join(metrics) + "\n"


# Global metrics registry
metrics = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Return the global metrics registry."""
    return metrics
