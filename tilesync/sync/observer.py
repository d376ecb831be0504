from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from tilesync.common.constants import (
    RESYNC_BACKOFF,
    RESYNC_MAX_RETRIES,
    RESYNC_TIMEOUT_SECONDS,
)
from tilesync.common.errors import ConsistencyViolation, UnrecoverableDesync, ValidationError
from tilesync.common.protocol import (
    BoardDiffMessage,
    ErrorMessage,
    FullSnapshotMessage,
    ResyncRequestMessage,
    changes_from_message,
    dump_message,
    parse_server_message,
    snapshot_from_message,
)
from tilesync.common.types import Counter, DesyncKind, Signal, SyncStatus
from tilesync.engine.cascade import CascadeEngine
from tilesync.engine.state import Board, Snapshot, TileChangeSet
from tilesync.monitor.events import CounterIncrement, MetricSample, NullRecorder, Recorder
from tilesync.sync.coordinator import ResyncCoordinator
from tilesync.sync.validator import SyncValidator

logger = logging.getLogger(__name__)


class ObserverSession:
    """Local mirror of one authoritative board.

    Starts from a snapshot, applies diffs strictly in sequence order,
    validates every result against the authority's checksum and hands any
    divergence to its ``ResyncCoordinator``.  ``send`` delivers outbound
    protocol messages (already dumped to dicts).
    """

    def __init__(
        self,
        snapshot: Snapshot,
        send: Callable[[dict[str, Any]], None],
        *,
        recorder: Recorder | None = None,
        engine: CascadeEngine | None = None,
        timeout: float = RESYNC_TIMEOUT_SECONDS,
        max_retries: int = RESYNC_MAX_RETRIES,
        backoff: float = RESYNC_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        connection_id: str = "",
    ) -> None:
        self.send = send
        self.recorder: Recorder = recorder if recorder is not None else NullRecorder()
        self.engine = engine if engine is not None else CascadeEngine(recorder=self.recorder)
        self.validator = SyncValidator(self.recorder)
        self.wall_clock = wall_clock
        self.board: Board = snapshot.board
        self.coordinator = ResyncCoordinator(
            self._request_snapshot,
            recorder=self.recorder,
            timeout=timeout,
            max_retries=max_retries,
            backoff=backoff,
            clock=clock,
            initial_sequence=snapshot.sequence_number,
            connection_id=connection_id,
        )
        self.applied = 0

    @property
    def status(self) -> SyncStatus:
        return self.coordinator.status

    @property
    def sequence(self) -> int:
        return self.coordinator.last_known_sequence

    def _request_snapshot(self) -> None:
        self.send(dump_message(ResyncRequestMessage()))

    def handle(self, raw: str | bytes | dict[str, Any]) -> bool:
        """Route one inbound server frame; return True when local state changed."""
        try:
            message = parse_server_message(raw)
            if isinstance(message, BoardDiffMessage):
                return self.on_diff(changes_from_message(message))
            if isinstance(message, FullSnapshotMessage):
                return self.on_snapshot(snapshot_from_message(message))
        except ValidationError as exc:
            self.recorder.record(CounterIncrement(Counter.VALIDATION_FAILURES))
            logger.warning("Ignoring malformed server frame: %s", exc)
            return False
        if isinstance(message, ErrorMessage):
            logger.warning("Server error %s: %s", message.code, message.message)
        return False

    def on_diff(self, changes: TileChangeSet) -> bool:
        if not self.coordinator.check_sequence(changes.sequence_number):
            return False
        if changes.timestamp_ms:
            latency = max(0.0, self.wall_clock() * 1000 - changes.timestamp_ms)
            self.recorder.record(MetricSample(Signal.BOARD_LATENCY, latency))
        try:
            board = self.engine.apply(self.board, changes)
        except ConsistencyViolation as exc:
            # CascadeEngine.apply already recorded the rejection.
            self.coordinator.trigger(
                DesyncKind.DIFF_REJECTED,
                {"sequence_number": changes.sequence_number, "reason": str(exc)},
                record=False,
            )
            return False
        self.board = board
        self.coordinator.advance(changes.sequence_number)
        self.applied += 1
        result = self.validator.validate(
            board, changes.resulting_checksum, context=f"diff {changes.sequence_number}"
        )
        if not result.matches:
            self.coordinator.trigger(
                DesyncKind.CHECKSUM_MISMATCH,
                {"sequence_number": changes.sequence_number},
                record=False,
            )
        return True

    def on_snapshot(self, snapshot: Snapshot) -> bool:
        if not self.coordinator.on_snapshot(snapshot.sequence_number):
            return False
        self.board = snapshot.board
        return True

    def poll(self, now: float | None = None) -> None:
        self.coordinator.poll(now)

    def close(self) -> None:
        self.coordinator.close()


async def run_resync_timer(session: ObserverSession, interval: float = 0.5) -> None:
    """Drive ``session.poll`` until the session closes or fails.

    ``UnrecoverableDesync`` propagates to whoever awaits the task.
    """
    while session.status != SyncStatus.CLOSED:
        await asyncio.sleep(interval)
        try:
            session.poll()
        except UnrecoverableDesync:
            logger.error("Observer session gave up on resync")
            raise
