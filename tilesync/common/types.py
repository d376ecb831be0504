from __future__ import annotations

from enum import Enum
from typing import Tuple

# (x, y), 0-indexed, y grows downward.
Cell = Tuple[int, int]


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    AWAITING_SNAPSHOT = "awaiting_snapshot"
    FAILED = "failed"
    CLOSED = "closed"


class DesyncKind(str, Enum):
    CHECKSUM_MISMATCH = "checksum_mismatch"
    SEQUENCE_GAP = "sequence_gap"
    SEQUENCE_REGRESSION = "sequence_regression"
    DIFF_REJECTED = "diff_rejected"
    RESYNC_EXHAUSTED = "resync_exhausted"


class Signal(str, Enum):
    """Sampled signals, one MetricWindow each."""

    BOARD_LATENCY = "board_latency"
    SYNC_VARIANCE = "sync_variance"
    NETWORK_LATENCY = "network_latency"
    RENDER_TIME = "render_time"
    RESOURCE_USAGE = "resource_usage"


class Counter(str, Enum):
    CHECKSUM_MISMATCHES = "checksum_mismatches"
    RESYNC_REQUESTS = "resync_requests"
    VALIDATION_FAILURES = "validation_failures"
    CONNECTION_DROPS = "connection_drops"
    RECONNECTION_ATTEMPTS = "reconnection_attempts"


class AlertType(str, Enum):
    HIGH_LATENCY = "high_latency"
    HIGH_SYNC_VARIANCE = "high_sync_variance"
    MULTIPLE_MISMATCHES = "multiple_mismatches"
    DESYNC_BURST = "desync_burst"
    HIGH_RESOURCE_USAGE = "high_resource_usage"
