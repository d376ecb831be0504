from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from tilesync.common.types import Cell


@dataclass(frozen=True)
class Tile:
    id: str
    letter: str
    points: int
    x: int
    y: int

    @property
    def pos(self) -> Cell:
        return (self.x, self.y)


@dataclass(frozen=True)
class Board:
    """Immutable grid of tiles; ``tiles[y][x]``.

    ``sequence`` is the sequence number of the last change set applied to
    produce this board (or the snapshot it was loaded from).
    """

    width: int
    height: int
    tiles: tuple[tuple[Tile, ...], ...]
    sequence: int = 0

    def tile_at(self, pos: Cell) -> Tile:
        x, y = pos
        return self.tiles[y][x]

    def iter_tiles(self):
        for row in self.tiles:
            yield from row

    def letters(self) -> str:
        return "".join(tile.letter for tile in self.iter_tiles())


@dataclass(frozen=True)
class FallingTile:
    tile_id: str
    source: Cell
    target: Cell


@dataclass(frozen=True)
class NewTile:
    id: str
    position: Cell
    letter: str
    points: int


@dataclass(frozen=True)
class TileChangeSet:
    removed_positions: tuple[Cell, ...]
    falling_tiles: tuple[FallingTile, ...]
    new_tiles: tuple[NewTile, ...]
    sequence_number: int
    resulting_checksum: str
    timestamp_ms: int = 0


@dataclass(frozen=True)
class Snapshot:
    board: Board
    sequence_number: int
    checksum: str


@dataclass
class BoardEntry:
    """Store-side record for one live board."""

    board_id: str
    board: Board
    created_ms: int
    mutations: int = 0
    rejected: int = 0
    subscribers: dict[int, Callable[["TileChangeSet"], None]] = field(default_factory=dict)
