"""Structured monitoring events.

Producers (cascade engine, validator, resync coordinator, API layer) build
one of these and hand it to a ``Recorder``.  A ``timestamp`` of ``None`` is
stamped by the monitor with its own clock on receipt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from tilesync.common.types import AlertType, Counter, DesyncKind, Severity, Signal


@dataclass(frozen=True)
class DesyncEvent:
    kind: DesyncKind
    severity: Severity
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: float | None = None


@dataclass(frozen=True)
class MetricSample:
    signal: Signal
    value: float
    timestamp: float | None = None


@dataclass(frozen=True)
class CounterIncrement:
    counter: Counter
    amount: int = 1
    timestamp: float | None = None


MonitorEvent = DesyncEvent | MetricSample | CounterIncrement


@dataclass
class Alert:
    type: AlertType
    severity: Severity
    message: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "data": dict(self.data),
            "resolved": self.resolved,
        }


class Recorder(Protocol):
    def record(self, event: MonitorEvent) -> None: ...


class NullRecorder:
    """Recorder that drops everything."""

    def record(self, event: MonitorEvent) -> None:
        return None
