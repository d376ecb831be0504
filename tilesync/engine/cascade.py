from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import replace

from tilesync.common.errors import ConsistencyViolation, InvariantViolation, ValidationError
from tilesync.common.types import Cell, Counter, DesyncKind, Severity
from tilesync.engine.checksum import checksum_rows
from tilesync.engine.geometry import cells_by_column, in_bounds
from tilesync.engine.state import Board, FallingTile, NewTile, Tile, TileChangeSet
from tilesync.engine.tiles import TileSource
from tilesync.monitor.events import CounterIncrement, DesyncEvent, NullRecorder, Recorder

logger = logging.getLogger(__name__)

Grid = list[list[Tile | None]]


def validate_cleared(board: Board, cleared: Iterable[Cell]) -> tuple[Cell, ...]:
    """Normalize a clear request, raising ``ValidationError`` when malformed."""
    positions: list[Cell] = []
    seen: set[Cell] = set()
    for raw in cleared:
        try:
            x, y = raw
        except (TypeError, ValueError):
            raise ValidationError(f"Malformed cell position: {raw!r}") from None
        if type(x) is not int or type(y) is not int:
            raise ValidationError(f"Cell coordinates must be integers: {raw!r}")
        pos = (x, y)
        if not in_bounds(pos, board.width, board.height):
            raise ValidationError(f"Cell {pos} is outside the {board.width}x{board.height} board")
        if pos in seen:
            raise ValidationError(f"Cell {pos} listed more than once")
        seen.add(pos)
        positions.append(pos)
    if not positions:
        raise ValidationError("No cells to clear")
    return tuple(positions)


def _column_cascade(
    board: Board, col: int, cleared_rows: set[int], tiles: TileSource
) -> tuple[list[FallingTile], list[NewTile]]:
    falling: list[FallingTile] = []
    # Survivors bottom-up keep their relative order.
    survivors = [row for row in range(board.height - 1, -1, -1) if row not in cleared_rows]
    for index, row in enumerate(survivors):
        target_row = board.height - 1 - index
        if target_row != row:
            tile = board.tiles[row][col]
            falling.append(FallingTile(tile_id=tile.id, source=(col, row), target=(col, target_row)))
    fresh: list[NewTile] = []
    for row in range(len(cleared_rows)):
        tile = tiles.draw(col, row)
        fresh.append(NewTile(id=tile.id, position=(col, row), letter=tile.letter, points=tile.points))
    return falling, fresh


def _rearrange(
    board: Board,
    removed: Sequence[Cell],
    falling: Sequence[FallingTile],
    new_tiles: Sequence[NewTile],
) -> Grid:
    grid: Grid = [list(row) for row in board.tiles]
    for pos in removed:
        if not in_bounds(pos, board.width, board.height):
            raise ConsistencyViolation(f"Removed cell {pos} is outside the board")
        x, y = pos
        if grid[y][x] is None:
            raise ConsistencyViolation(f"Cell {pos} removed twice")
        grid[y][x] = None

    lifted: list[tuple[FallingTile, Tile]] = []
    for move in falling:
        (sx, sy), (tx, ty) = move.source, move.target
        if tx != sx or ty <= sy:
            raise ConsistencyViolation(f"Tile {move.tile_id} does not fall straight down")
        if not in_bounds(move.target, board.width, board.height):
            raise ConsistencyViolation(f"Tile {move.tile_id} falls outside the board")
        tile = grid[sy][sx] if in_bounds(move.source, board.width, board.height) else None
        if tile is None or tile.id != move.tile_id:
            found = tile.id if tile else None
            raise ConsistencyViolation(
                f"Expected tile {move.tile_id} at {move.source}, found {found}"
            )
        grid[sy][sx] = None
        lifted.append((move, tile))
    for move, tile in lifted:
        tx, ty = move.target
        if grid[ty][tx] is not None:
            raise ConsistencyViolation(f"Tile {move.tile_id} lands on occupied cell {move.target}")
        grid[ty][tx] = replace(tile, x=tx, y=ty)

    for new in new_tiles:
        if not in_bounds(new.position, board.width, board.height):
            raise ConsistencyViolation(f"New tile {new.id} is outside the board")
        x, y = new.position
        if grid[y][x] is not None:
            raise ConsistencyViolation(f"New tile {new.id} targets occupied cell {new.position}")
        grid[y][x] = Tile(id=new.id, letter=new.letter, points=new.points, x=x, y=y)
    return grid


def _require_full(grid: Grid, width: int, height: int) -> tuple[tuple[Tile, ...], ...]:
    empty = [(x, y) for y, row in enumerate(grid) for x, tile in enumerate(row) if tile is None]
    if empty:
        raise InvariantViolation(f"Cascade left {len(empty)} empty cells: {empty}")
    rows = tuple(tuple(row) for row in grid)  # type: ignore[arg-type]
    if sum(len(row) for row in rows) != width * height:
        raise InvariantViolation("Cascade changed the board's cell count")
    return rows


def compute_changes(
    board: Board,
    cleared: Iterable[Cell],
    tiles: TileSource,
    *,
    sequence_number: int | None = None,
    timestamp_ms: int | None = None,
) -> TileChangeSet:
    """Compute removal, gravity and refill for ``cleared`` without touching ``board``."""
    removed = validate_cleared(board, cleared)
    falling: list[FallingTile] = []
    new_tiles: list[NewTile] = []
    columns = cells_by_column(list(removed))
    for col in sorted(columns):
        col_falling, col_new = _column_cascade(board, col, columns[col], tiles)
        falling.extend(col_falling)
        new_tiles.extend(col_new)
    rows = _require_full(_rearrange(board, removed, falling, new_tiles), board.width, board.height)
    return TileChangeSet(
        removed_positions=removed,
        falling_tiles=tuple(falling),
        new_tiles=tuple(new_tiles),
        sequence_number=board.sequence + 1 if sequence_number is None else sequence_number,
        resulting_checksum=checksum_rows(board.width, board.height, rows),
        timestamp_ms=int(time.time() * 1000) if timestamp_ms is None else timestamp_ms,
    )


def apply_changes(board: Board, changes: TileChangeSet) -> Board:
    """Return the board produced by applying ``changes`` to ``board``.

    Raises ``ConsistencyViolation`` when the change set does not describe
    ``board`` (for example an observer whose copy already diverged).
    """
    grid = _rearrange(board, changes.removed_positions, changes.falling_tiles, changes.new_tiles)
    rows = _require_full(grid, board.width, board.height)
    return Board(
        width=board.width,
        height=board.height,
        tiles=rows,
        sequence=changes.sequence_number,
    )


class CascadeEngine:
    """Cascade computation bound to a tile source and a monitoring recorder."""

    def __init__(self, tiles: TileSource | None = None, recorder: Recorder | None = None) -> None:
        self.tiles = tiles if tiles is not None else TileSource()
        self.recorder: Recorder = recorder if recorder is not None else NullRecorder()

    def compute_changes(
        self, board: Board, cleared: Iterable[Cell], sequence_number: int | None = None
    ) -> TileChangeSet:
        try:
            changes = compute_changes(board, cleared, self.tiles, sequence_number=sequence_number)
        except ValidationError as exc:
            self.recorder.record(CounterIncrement(Counter.VALIDATION_FAILURES))
            logger.info("Rejected clear request: %s", exc)
            raise
        logger.debug(
            "Computed changes seq=%s: %s removed, %s falling, %s new",
            changes.sequence_number,
            len(changes.removed_positions),
            len(changes.falling_tiles),
            len(changes.new_tiles),
        )
        return changes

    def apply(self, board: Board, changes: TileChangeSet) -> Board:
        try:
            return apply_changes(board, changes)
        except ConsistencyViolation as exc:
            self.recorder.record(
                DesyncEvent(
                    kind=DesyncKind.DIFF_REJECTED,
                    severity=Severity.HIGH,
                    detail={"sequence_number": changes.sequence_number, "reason": str(exc)},
                )
            )
            logger.warning("Change set %s rejected: %s", changes.sequence_number, exc)
            raise

    def cascade(self, board: Board, cleared: Iterable[Cell]) -> tuple[TileChangeSet, Board]:
        changes = self.compute_changes(board, cleared)
        return changes, self.apply(board, changes)
