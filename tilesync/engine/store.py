from __future__ import annotations

import itertools
import logging
import random
import threading
import time
import uuid
from collections.abc import Callable, Sequence

from tilesync.common.constants import (
    BOARD_HEIGHT,
    BOARD_WIDTH,
    MAX_GENERATION_ATTEMPTS,
    MAX_WORD_LENGTH,
    MIN_WORDS_REQUIRED,
)
from tilesync.common.errors import StaleMutationError, UnknownBoardError, ValidationError
from tilesync.common.types import Cell, Counter
from tilesync.engine.cascade import CascadeEngine
from tilesync.engine.checksum import checksum
from tilesync.engine.generation import WordFinder, generate_board
from tilesync.engine.geometry import in_bounds
from tilesync.engine.state import Board, BoardEntry, Snapshot, TileChangeSet
from tilesync.engine.tiles import TileSource
from tilesync.engine.words import WordOracle
from tilesync.monitor.events import CounterIncrement, NullRecorder, Recorder

logger = logging.getLogger(__name__)

Listener = Callable[[TileChangeSet], None]


class BoardStore:
    """Authoritative owner of every live board.

    Mutations against a board are serialized under one lock in arrival
    order; subscribers are notified inside that lock so they observe change
    sets in sequence order.  Listeners must not block.
    """

    def __init__(
        self,
        oracle: WordOracle,
        seed: int | None = None,
        width: int = BOARD_WIDTH,
        height: int = BOARD_HEIGHT,
        min_words: int = MIN_WORDS_REQUIRED,
        max_generation_attempts: int = MAX_GENERATION_ATTEMPTS,
        max_word_length: int = MAX_WORD_LENGTH,
        recorder: Recorder | None = None,
    ) -> None:
        self.oracle = oracle
        self.rng = random.Random(seed)
        self.width = width
        self.height = height
        self.min_words = min_words
        self.max_generation_attempts = max_generation_attempts
        self.recorder: Recorder = recorder if recorder is not None else NullRecorder()
        self.engine = CascadeEngine(TileSource(self.rng), recorder=self.recorder)
        self.finder = WordFinder(oracle, max_length=max_word_length)
        self.boards: dict[str, BoardEntry] = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)

    def create_board(self) -> BoardEntry:
        """Generate a validated board and register it under a fresh id."""
        board = generate_board(
            self.oracle,
            self.engine.tiles,
            width=self.width,
            height=self.height,
            min_words=self.min_words,
            max_attempts=self.max_generation_attempts,
            finder=self.finder,
        )
        return self.add_board(board)

    def add_board(self, board: Board, board_id: str | None = None) -> BoardEntry:
        entry = BoardEntry(
            board_id=board_id or str(uuid.uuid4()),
            board=board,
            created_ms=int(time.time() * 1000),
        )
        with self._lock:
            self.boards[entry.board_id] = entry
        logger.info("Board %s registered at sequence %s", entry.board_id, board.sequence)
        return entry

    def get(self, board_id: str) -> BoardEntry:
        entry = self.boards.get(board_id)
        if entry is None:
            raise UnknownBoardError(f"Unknown board {board_id}")
        return entry

    def discard_board(self, board_id: str) -> BoardEntry:
        with self._lock:
            entry = self.boards.pop(board_id, None)
            if entry is None:
                raise UnknownBoardError(f"Unknown board {board_id}")
            entry.subscribers.clear()
        logger.info("Board %s discarded after %s mutations", board_id, entry.mutations)
        return entry

    def snapshot(self, board_id: str) -> Snapshot:
        with self._lock:
            board = self.get(board_id).board
        return Snapshot(board=board, sequence_number=board.sequence, checksum=checksum(board))

    def submit_clear(
        self,
        board_id: str,
        positions: Sequence[Cell],
        tile_ids: Sequence[str] | None = None,
    ) -> TileChangeSet:
        """Apply one mutation request and return its change set.

        When ``tile_ids`` is given each id must still occupy the matching
        cell; a tile already cleared by an earlier mutation makes the
        request stale.
        """
        with self._lock:
            entry = self.get(board_id)
            board = entry.board
            try:
                if tile_ids is not None:
                    self._check_fresh(board, positions, tile_ids)
                changes = self.engine.compute_changes(board, positions)
            except ValidationError:
                entry.rejected += 1
                raise
            entry.board = self.engine.apply(board, changes)
            entry.mutations += 1
            for listener in list(entry.subscribers.values()):
                try:
                    listener(changes)
                except Exception:
                    logger.exception("Board %s listener failed", board_id)
        return changes

    def _check_fresh(
        self, board: Board, positions: Sequence[Cell], tile_ids: Sequence[str]
    ) -> None:
        if len(tile_ids) != len(positions):
            self.recorder.record(CounterIncrement(Counter.VALIDATION_FAILURES))
            raise ValidationError("tile_ids must match positions one-to-one")
        for pos, tile_id in zip(positions, tile_ids):
            cell = tuple(pos) if isinstance(pos, (tuple, list)) else ()
            # Malformed and out-of-bounds cells are left for compute_changes to reject.
            if len(cell) != 2 or any(type(v) is not int for v in cell):
                continue
            if not in_bounds(cell, board.width, board.height):
                continue
            current = board.tile_at(cell)
            if current.id != tile_id:
                self.recorder.record(CounterIncrement(Counter.VALIDATION_FAILURES))
                raise StaleMutationError(
                    f"Tile {tile_id} is no longer at {cell} (now {current.id})"
                )

    def subscribe(self, board_id: str, listener: Listener) -> int:
        with self._lock:
            entry = self.get(board_id)
            token = next(self._tokens)
            entry.subscribers[token] = listener
        return token

    def unsubscribe(self, board_id: str, token: int) -> None:
        with self._lock:
            entry = self.boards.get(board_id)
            if entry is not None:
                entry.subscribers.pop(token, None)

    def observer_count(self, board_id: str) -> int:
        return len(self.get(board_id).subscribers)
