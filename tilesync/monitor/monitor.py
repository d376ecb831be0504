"""Synchronization health monitor.

One ``SyncMonitor`` is shared by every connection in the process.  It keeps
a ``MetricWindow`` per sampled signal, monotonically increasing counters, a
bounded desync event log and a bounded alert list.  A background evaluator
thread (``start``/``stop``) periodically compares aggregates against static
thresholds; ``evaluate`` can also be called directly.

Alerts are never resolved automatically.  While an unresolved alert of a
given type exists, the same condition does not raise a second one.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from tilesync.common.constants import (
    ALERT_CAPACITY,
    CRITICAL_DESYNC_EVENTS,
    DESYNC_WINDOW_SECONDS,
    EVENT_LOG_CAPACITY,
    MAX_CHECKSUM_MISMATCHES,
    MAX_LATENCY_MS,
    MAX_RESOURCE_USAGE_MB,
    MAX_SYNC_VARIANCE_MS,
    METRIC_WINDOW_SIZE,
    MONITOR_INTERVAL_SECONDS,
    RECENT_EVENT_EXPORT,
    SHORT_METRIC_WINDOW_SIZE,
    SUMMARY_WINDOW_SECONDS,
)
from tilesync.common.types import AlertType, Counter, DesyncKind, Severity, Signal
from tilesync.monitor.events import (
    Alert,
    CounterIncrement,
    DesyncEvent,
    MetricSample,
    MonitorEvent,
)
from tilesync.monitor.window import MetricWindow

logger = logging.getLogger(__name__)

LATENCY_SIGNALS = (Signal.BOARD_LATENCY, Signal.NETWORK_LATENCY, Signal.RENDER_TIME)
# Variance and render samples use the shorter window.
SHORT_WINDOW_SIGNALS = (Signal.SYNC_VARIANCE, Signal.RENDER_TIME)


@dataclass(frozen=True)
class Thresholds:
    max_latency_ms: float = MAX_LATENCY_MS
    max_sync_variance_ms: float = MAX_SYNC_VARIANCE_MS
    max_checksum_mismatches: int = MAX_CHECKSUM_MISMATCHES
    max_resource_usage_mb: float = MAX_RESOURCE_USAGE_MB
    critical_desync_events: int = CRITICAL_DESYNC_EVENTS
    desync_window_seconds: float = DESYNC_WINDOW_SECONDS


def max_rss_mb() -> float | None:
    """Peak resident set size of this process in MB, None where unsupported."""
    if sys.platform == "win32":
        return None
    import resource

    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes.
    if sys.platform == "darwin":
        return usage / (1024 * 1024)
    return usage / 1024


class SyncMonitor:
    def __init__(
        self,
        interval: float = MONITOR_INTERVAL_SECONDS,
        window_size: int = METRIC_WINDOW_SIZE,
        short_window_size: int = SHORT_METRIC_WINDOW_SIZE,
        event_capacity: int = EVENT_LOG_CAPACITY,
        alert_capacity: int = ALERT_CAPACITY,
        thresholds: Thresholds | None = None,
        clock: Callable[[], float] = time.time,
        resource_probe: Callable[[], float | None] | None = max_rss_mb,
    ) -> None:
        self.interval = interval
        self.thresholds = thresholds if thresholds is not None else Thresholds()
        self.clock = clock
        self.resource_probe = resource_probe
        self.windows: dict[Signal, MetricWindow] = {
            signal: MetricWindow(
                short_window_size if signal in SHORT_WINDOW_SIGNALS else window_size
            )
            for signal in Signal
        }
        self.counters: dict[Counter, int] = {counter: 0 for counter in Counter}
        self.events: deque[DesyncEvent] = deque(maxlen=event_capacity)
        self.alerts: deque[Alert] = deque(maxlen=alert_capacity)
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ----- lifecycle -----

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sync-monitor", daemon=True)
        self._thread.start()
        logger.info("Sync monitoring started (interval %.1fs)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("Sync monitoring stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.collect_resource_usage()
                self.evaluate()
            except Exception:
                logger.exception("Monitor evaluation failed")

    # ----- recording -----

    def record(self, event: MonitorEvent) -> None:
        if not isinstance(event, (DesyncEvent, MetricSample, CounterIncrement)):
            raise TypeError(f"Unsupported monitor event: {event!r}")
        if event.timestamp is None:
            event = replace(event, timestamp=self.clock())
        with self._lock:
            if isinstance(event, DesyncEvent):
                self._record_desync(event)
            elif isinstance(event, MetricSample):
                self._record_sample(event)
            else:
                self.counters[event.counter] += event.amount

    def _record_desync(self, event: DesyncEvent) -> None:
        self.events.append(event)
        if event.kind == DesyncKind.CHECKSUM_MISMATCH:
            self.counters[Counter.CHECKSUM_MISMATCHES] += 1
            self._check_mismatches(event.timestamp or self.clock())

    def _record_sample(self, sample: MetricSample) -> None:
        self.windows[sample.signal].add(sample.value)
        limits = self.thresholds
        if sample.signal == Signal.BOARD_LATENCY and sample.value > limits.max_latency_ms:
            self._raise_alert(
                AlertType.HIGH_LATENCY,
                Severity.MEDIUM,
                f"High board receive latency: {sample.value:.0f}ms",
                {"latency": sample.value},
            )
        elif sample.signal == Signal.SYNC_VARIANCE and sample.value > limits.max_sync_variance_ms:
            self._raise_alert(
                AlertType.HIGH_SYNC_VARIANCE,
                Severity.HIGH,
                f"High sync variance detected: {sample.value:.0f}ms",
                {"variance": sample.value},
            )

    def increment(self, counter: Counter, amount: int = 1) -> None:
        self.record(CounterIncrement(counter, amount))

    def record_board_latency(self, latency_ms: float) -> None:
        self.record(MetricSample(Signal.BOARD_LATENCY, latency_ms))

    def record_sync_variance(self, variance_ms: float) -> None:
        self.record(MetricSample(Signal.SYNC_VARIANCE, variance_ms))

    def record_network(self, latency_ms: float, dropped: bool = False) -> None:
        self.record(MetricSample(Signal.NETWORK_LATENCY, latency_ms))
        if dropped:
            self.increment(Counter.CONNECTION_DROPS)

    def record_render_time(self, render_ms: float) -> None:
        self.record(MetricSample(Signal.RENDER_TIME, render_ms))

    def collect_resource_usage(self) -> None:
        if self.resource_probe is None:
            return
        value = self.resource_probe()
        if value is not None:
            self.record(MetricSample(Signal.RESOURCE_USAGE, value))

    # ----- evaluation -----

    def _recent_events(self, now: float, window: float) -> list[DesyncEvent]:
        cutoff = now - window
        return [e for e in self.events if (e.timestamp or 0.0) >= cutoff]

    def _check_mismatches(self, now: float) -> Alert | None:
        recent = [
            e
            for e in self._recent_events(now, self.thresholds.desync_window_seconds)
            if e.kind == DesyncKind.CHECKSUM_MISMATCH
        ]
        if len(recent) <= self.thresholds.max_checksum_mismatches:
            return None
        return self._raise_alert(
            AlertType.MULTIPLE_MISMATCHES,
            Severity.CRITICAL,
            f"Multiple checksum mismatches detected: {len(recent)}",
            {"count": len(recent), "total": self.counters[Counter.CHECKSUM_MISMATCHES]},
        )

    def evaluate(self, now: float | None = None) -> list[Alert]:
        """Compare current aggregates against thresholds; return newly raised alerts."""
        now = self.clock() if now is None else now
        limits = self.thresholds
        raised: list[Alert] = []
        with self._lock:
            recent = self._recent_events(now, limits.desync_window_seconds)
            if len(recent) >= limits.critical_desync_events:
                alert = self._raise_alert(
                    AlertType.DESYNC_BURST,
                    Severity.CRITICAL,
                    f"Critical: {len(recent)} desync events in last "
                    f"{limits.desync_window_seconds:.0f}s",
                    {"events": [_event_dict(e) for e in recent]},
                )
                if alert:
                    raised.append(alert)
            alert = self._check_mismatches(now)
            if alert:
                raised.append(alert)
            latency = self.windows[Signal.BOARD_LATENCY]
            if len(latency) and latency.percentile(95) > limits.max_latency_ms:
                alert = self._raise_alert(
                    AlertType.HIGH_LATENCY,
                    Severity.MEDIUM,
                    f"Board receive latency p95 {latency.percentile(95):.0f}ms",
                    latency.aggregate(with_percentiles=True),
                )
                if alert:
                    raised.append(alert)
            variance = self.windows[Signal.SYNC_VARIANCE]
            if len(variance) and variance.mean() > limits.max_sync_variance_ms:
                alert = self._raise_alert(
                    AlertType.HIGH_SYNC_VARIANCE,
                    Severity.HIGH,
                    f"Mean sync variance {variance.mean():.0f}ms",
                    variance.aggregate(),
                )
                if alert:
                    raised.append(alert)
            usage = self.windows[Signal.RESOURCE_USAGE]
            if len(usage) and usage.mean() > limits.max_resource_usage_mb:
                alert = self._raise_alert(
                    AlertType.HIGH_RESOURCE_USAGE,
                    Severity.MEDIUM,
                    f"Resource usage {usage.mean():.0f}MB",
                    usage.aggregate(),
                )
                if alert:
                    raised.append(alert)
            unresolved = sum(1 for a in self.alerts if not a.resolved)
        if unresolved:
            logger.warning("%s unresolved sync alerts", unresolved)
        return raised

    def _raise_alert(
        self, alert_type: AlertType, severity: Severity, message: str, data: dict[str, Any]
    ) -> Alert | None:
        if any(a.type == alert_type and not a.resolved for a in self.alerts):
            return None
        alert = Alert(
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=self.clock(),
            data=data,
        )
        self.alerts.append(alert)
        logger.warning("SYNC ALERT [%s]: %s", severity.value.upper(), message)
        return alert

    def resolve_alert(self, index: int) -> Alert:
        with self._lock:
            alert = self.alerts[index]
            alert.resolved = True
        return alert

    # ----- export -----

    def summary(self, now: float | None = None) -> dict[str, Any]:
        now = self.clock() if now is None else now
        with self._lock:
            recent = self._recent_events(now, SUMMARY_WINDOW_SECONDS)
            alerts = list(self.alerts)
            return {
                "performance": {
                    "average_network_latency": self.windows[Signal.NETWORK_LATENCY].mean(),
                    "average_board_render_time": self.windows[Signal.RENDER_TIME].mean(),
                    "resource_usage": self.windows[Signal.RESOURCE_USAGE].mean(),
                },
                "sync": {
                    "checksum_mismatches": self.counters[Counter.CHECKSUM_MISMATCHES],
                    "board_resync_requests": self.counters[Counter.RESYNC_REQUESTS],
                    "validation_failures": self.counters[Counter.VALIDATION_FAILURES],
                    "recent_desync_events": len(recent),
                    "sync_variance": self.windows[Signal.SYNC_VARIANCE].mean(),
                },
                "network": {
                    "connection_drops": self.counters[Counter.CONNECTION_DROPS],
                    "reconnection_attempts": self.counters[Counter.RECONNECTION_ATTEMPTS],
                    "latency_percentiles": self.windows[Signal.NETWORK_LATENCY].percentiles(),
                },
                "alerts": {
                    "total": len(alerts),
                    "unresolved": sum(1 for a in alerts if not a.resolved),
                    "critical": sum(1 for a in alerts if a.severity == Severity.CRITICAL),
                },
            }

    def export(self, now: float | None = None) -> dict[str, Any]:
        """Read-only diagnostic snapshot: aggregates, counters, alerts, recent events."""
        now = self.clock() if now is None else now
        with self._lock:
            metrics = {
                signal.value: window.aggregate(with_percentiles=signal in LATENCY_SIGNALS)
                for signal, window in self.windows.items()
            }
            return {
                "metrics": metrics,
                "counters": {counter.value: value for counter, value in self.counters.items()},
                "alerts": [alert.as_dict() for alert in self.alerts],
                "recent_events": [_event_dict(e) for e in list(self.events)[-RECENT_EVENT_EXPORT:]],
                "summary": self.summary(now),
                "timestamp": now,
            }


def _event_dict(event: DesyncEvent) -> dict[str, Any]:
    return {
        "timestamp": event.timestamp,
        "kind": event.kind.value,
        "severity": event.severity.value,
        "detail": dict(event.detail),
    }
