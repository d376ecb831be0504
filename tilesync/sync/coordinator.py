"""Per-connection resync state machine.

``SYNCED`` accepts exactly ``last_known_sequence + 1``.  A checksum mismatch,
a gap, a regression or a rejected diff moves the connection to
``AWAITING_SNAPSHOT`` and sends one snapshot request; further triggers are
coalesced until a snapshot is accepted.  Unanswered requests are retried
with a growing timeout and, once retries run out, the connection becomes
``FAILED`` and every further call raises ``UnrecoverableDesync``.

Nothing here blocks: the pending request is plain state checked by
``poll``, which the owner calls from a timer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tilesync.common.constants import (
    RESYNC_BACKOFF,
    RESYNC_MAX_RETRIES,
    RESYNC_TIMEOUT_SECONDS,
)
from tilesync.common.errors import UnrecoverableDesync
from tilesync.common.types import Counter, DesyncKind, Severity, SyncStatus
from tilesync.monitor.events import CounterIncrement, DesyncEvent, NullRecorder, Recorder

logger = logging.getLogger(__name__)


@dataclass
class SyncState:
    status: SyncStatus = SyncStatus.SYNCED
    last_known_sequence: int = 0
    last_snapshot_sequence: int | None = None


@dataclass
class PendingRequest:
    reason: DesyncKind
    attempts: int = 0
    sent_at: float = 0.0
    deadline: float = 0.0


class ResyncCoordinator:
    def __init__(
        self,
        send_request: Callable[[], None],
        *,
        recorder: Recorder | None = None,
        timeout: float = RESYNC_TIMEOUT_SECONDS,
        max_retries: int = RESYNC_MAX_RETRIES,
        backoff: float = RESYNC_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        initial_sequence: int = 0,
        connection_id: str = "",
    ) -> None:
        self.send_request = send_request
        self.recorder: Recorder = recorder if recorder is not None else NullRecorder()
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.clock = clock
        self.connection_id = connection_id
        self.state = SyncState(
            last_known_sequence=initial_sequence,
            last_snapshot_sequence=initial_sequence,
        )
        self.pending: PendingRequest | None = None
        self.requests_sent = 0

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    @property
    def last_known_sequence(self) -> int:
        return self.state.last_known_sequence

    def _ensure_usable(self) -> None:
        if self.state.status == SyncStatus.FAILED:
            raise UnrecoverableDesync(
                f"Connection {self.connection_id or '?'} exhausted resync retries"
            )

    def check_sequence(self, sequence_number: int) -> bool:
        """Return True when a diff with ``sequence_number`` may be applied now."""
        self._ensure_usable()
        if self.state.status != SyncStatus.SYNCED:
            return False
        expected = self.state.last_known_sequence + 1
        if sequence_number == expected:
            return True
        kind = (
            DesyncKind.SEQUENCE_GAP if sequence_number > expected else DesyncKind.SEQUENCE_REGRESSION
        )
        self.trigger(kind, {"expected": expected, "received": sequence_number})
        return False

    def advance(self, sequence_number: int) -> None:
        self.state.last_known_sequence = sequence_number

    def trigger(
        self, kind: DesyncKind, detail: dict[str, Any] | None = None, record: bool = True
    ) -> bool:
        """Enter AWAITING_SNAPSHOT and request a snapshot.

        Returns False when the trigger was coalesced into a pending request
        (or the connection is closed).  ``record=False`` is for callers that
        already recorded the desync event themselves.
        """
        self._ensure_usable()
        if self.state.status == SyncStatus.CLOSED:
            return False
        if record:
            self.recorder.record(
                DesyncEvent(
                    kind=kind,
                    severity=Severity.HIGH,
                    detail={"connection": self.connection_id, **(detail or {})},
                )
            )
        if self.state.status == SyncStatus.AWAITING_SNAPSHOT:
            logger.debug("Resync already pending for %s; %s coalesced", self.connection_id, kind.value)
            return False
        logger.warning(
            "Desync on %s (%s) at seq %s; requesting snapshot",
            self.connection_id or "connection",
            kind.value,
            self.state.last_known_sequence,
        )
        self.state.status = SyncStatus.AWAITING_SNAPSHOT
        self.pending = PendingRequest(reason=kind)
        self._send()
        return True

    def _send(self) -> None:
        pending = self.pending
        now = self.clock()
        pending.attempts += 1
        pending.sent_at = now
        pending.deadline = now + self.timeout * self.backoff ** (pending.attempts - 1)
        self.requests_sent += 1
        self.recorder.record(CounterIncrement(Counter.RESYNC_REQUESTS))
        self.send_request()

    def on_snapshot(self, sequence_number: int) -> bool:
        """Decide whether a snapshot at ``sequence_number`` replaces local state.

        Snapshots older than the last applied diff, or not newer than the
        last applied snapshot, are discarded and the state is left as is.
        """
        self._ensure_usable()
        if self.state.status == SyncStatus.CLOSED:
            return False
        state = self.state
        stale = sequence_number < state.last_known_sequence or (
            state.last_snapshot_sequence is not None
            and sequence_number <= state.last_snapshot_sequence
        )
        if stale:
            logger.info(
                "Discarding stale snapshot seq=%s on %s (last known %s)",
                sequence_number,
                self.connection_id or "connection",
                state.last_known_sequence,
            )
            return False
        state.last_known_sequence = sequence_number
        state.last_snapshot_sequence = sequence_number
        if state.status == SyncStatus.AWAITING_SNAPSHOT:
            logger.info("Resynced %s at seq %s", self.connection_id or "connection", sequence_number)
        state.status = SyncStatus.SYNCED
        self.pending = None
        return True

    def poll(self, now: float | None = None) -> None:
        """Retry or give up on an overdue snapshot request."""
        self._ensure_usable()
        pending = self.pending
        if self.state.status != SyncStatus.AWAITING_SNAPSHOT or pending is None:
            return
        now = self.clock() if now is None else now
        if now < pending.deadline:
            return
        if pending.attempts > self.max_retries:
            self.state.status = SyncStatus.FAILED
            self.pending = None
            self.recorder.record(
                DesyncEvent(
                    kind=DesyncKind.RESYNC_EXHAUSTED,
                    severity=Severity.CRITICAL,
                    detail={
                        "connection": self.connection_id,
                        "attempts": pending.attempts,
                        "reason": pending.reason.value,
                    },
                )
            )
            logger.error(
                "Resync for %s failed after %s attempts",
                self.connection_id or "connection",
                pending.attempts,
            )
            self._ensure_usable()
        logger.warning(
            "Snapshot request %s on %s timed out; retrying",
            pending.attempts,
            self.connection_id or "connection",
        )
        self._send()

    def close(self) -> None:
        self.pending = None
        self.state.status = SyncStatus.CLOSED
