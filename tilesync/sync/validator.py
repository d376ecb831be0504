from __future__ import annotations

import logging
from dataclasses import dataclass

from tilesync.common.errors import ConsistencyViolation
from tilesync.common.types import DesyncKind, Severity
from tilesync.engine.checksum import checksum
from tilesync.engine.state import Board
from tilesync.monitor.events import DesyncEvent, NullRecorder, Recorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    matches: bool
    local_checksum: str
    received_checksum: str
    context: str = ""
    sequence_number: int | None = None


def validate(
    local_board: Board,
    received_checksum: str,
    context: str = "",
    recorder: Recorder = NullRecorder(),
) -> ValidationResult:
    """Recompute the local checksum and compare it with the received one.

    A mismatch is always recorded as a high-severity desync event; it is
    never reported as a match.
    """
    local = checksum(local_board)
    result = ValidationResult(
        matches=local == received_checksum,
        local_checksum=local,
        received_checksum=received_checksum,
        context=context,
        sequence_number=local_board.sequence,
    )
    if not result.matches:
        logger.warning(
            "Checksum mismatch (%s) at seq %s: local=%s received=%s",
            context or "unspecified",
            local_board.sequence,
            local[:12],
            received_checksum[:12],
        )
        recorder.record(
            DesyncEvent(
                kind=DesyncKind.CHECKSUM_MISMATCH,
                severity=Severity.HIGH,
                detail={
                    "context": context,
                    "sequence_number": local_board.sequence,
                    "local_checksum": local,
                    "received_checksum": received_checksum,
                },
            )
        )
    return result


class SyncValidator:
    """``validate`` bound to a recorder."""

    def __init__(self, recorder: Recorder | None = None) -> None:
        self.recorder: Recorder = recorder if recorder is not None else NullRecorder()

    def validate(self, local_board: Board, received_checksum: str, context: str = "") -> ValidationResult:
        return validate(local_board, received_checksum, context, self.recorder)

    def require_consistent(
        self, local_board: Board, received_checksum: str, context: str = ""
    ) -> ValidationResult:
        result = self.validate(local_board, received_checksum, context)
        if not result.matches:
            raise ConsistencyViolation(
                f"Board checksum {result.local_checksum} does not match "
                f"{result.received_checksum} ({context or 'unspecified'})"
            )
        return result
