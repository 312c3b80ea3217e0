"""
LogMill Metrics Store

In-memory storage for every metric declared by the loaded programs. VMs are
the only writers; the exporter and the coordinator only read snapshots.

Each metric holds one Datum per distinct tuple of label values. A metric
without labels keeps a single Datum under the empty tuple.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

log = logging.getLogger("logmill.store")


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class Datum:
    """A single metric value and the time it was last updated."""

    value: float = 0.0
    timestamp: float = 0.0

    def set(self, value: float, timestamp: float | None = None) -> None:
        self.value = value
        self.timestamp = timestamp if timestamp is not None else time.time()

    def add(self, delta: float, timestamp: float | None = None) -> None:
        self.set(self.value + delta, timestamp)


@dataclass
class Metric:
    """A named metric declared by one program."""

    name: str
    program: str
    kind: MetricKind
    keys: tuple[str, ...] = ()
    datums: dict[tuple[str, ...], Datum] = field(default_factory=dict)

    def get_datum(self, *label_values: str) -> Datum:
        """Return the datum for the given label values, creating it if needed."""
        if len(label_values) != len(self.keys):
            raise ValueError(
                f"metric {self.name!r} has {len(self.keys)} label(s), "
                f"got {len(label_values)} value(s)"
            )
        datum = self.datums.get(label_values)
        if datum is None:
            datum = Datum()
            self.datums[label_values] = datum
        return datum

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "program": self.program,
            "kind": self.kind.value,
            "keys": list(self.keys),
            "values": [
                {
                    "labels": dict(zip(self.keys, label_values)),
                    "value": datum.value,
                    "timestamp": datum.timestamp,
                }
                for label_values, datum in sorted(self.datums.items())
            ],
        }


class MetricsStore:
    """Mapping from metric name to the metrics declared under that name."""

    def __init__(self) -> None:
        self._metrics: dict[str, list[Metric]] = {}

    def add(self, metric: Metric) -> Metric:
        """
        Register a metric. Re-registering the same (name, program) pair
        returns the existing metric so reloading a program keeps its values.
        """
        existing = self.find(metric.name, metric.program)
        if existing is not None:
            return existing
        self._metrics.setdefault(metric.name, []).append(metric)
        log.debug(f"> STORE: Registered {metric.kind.value} '{metric.name}' ({metric.program})")
        return metric

    def find(self, name: str, program: str) -> Metric | None:
        for metric in self._metrics.get(name, []):
            if metric.program == program:
                return metric
        return None

    def __iter__(self) -> Iterator[Metric]:
        for name in sorted(self._metrics):
            yield from self._metrics[name]

    def __len__(self) -> int:
        return sum(len(metrics) for metrics in self._metrics.values())

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """Return a JSON-ready copy of every metric, keyed by name."""
        return {
            name: [metric.to_dict() for metric in self._metrics[name]]
            for name in sorted(self._metrics)
        }
