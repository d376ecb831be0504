"""Error hierarchy for board mutation and synchronization.

Everything inherits from ``TileSyncError``.  ``InvariantViolation`` marks a
programming error and is never handled.
"""


class TileSyncError(Exception):
    """Base error for all tilesync operations."""


class ValidationError(TileSyncError):
    """Malformed mutation request (empty, out of bounds, duplicate cells)."""


class StaleMutationError(ValidationError):
    """Mutation references a tile already cleared by an accepted mutation."""


class InvariantViolation(TileSyncError):
    """A board invariant failed after a cascade. Not recoverable."""


class GenerationFailure(TileSyncError):
    """No board met the word-count floor within the allowed attempts."""


class ConsistencyViolation(TileSyncError):
    """Local board state disagrees with the authority."""


class UnrecoverableDesync(TileSyncError):
    """Resync retries exhausted; the connection's local state is untrusted."""


class UnknownBoardError(TileSyncError):
    """No board is registered under the requested id."""
