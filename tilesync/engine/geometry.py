from __future__ import annotations

from tilesync.common.types import Cell


def in_bounds(cell: Cell, width: int, height: int) -> bool:
    x, y = cell
    return 0 <= x < width and 0 <= y < height


def neighbors_8(cell: Cell) -> list[Cell]:
    x, y = cell
    return [
        (x + 1, y),
        (x - 1, y),
        (x, y + 1),
        (x, y - 1),
        (x + 1, y + 1),
        (x + 1, y - 1),
        (x - 1, y + 1),
        (x - 1, y - 1),
    ]


def adjacent_cells(cell: Cell, width: int, height: int) -> list[Cell]:
    return [n for n in neighbors_8(cell) if in_bounds(n, width, height)]


def all_cells(width: int, height: int) -> list[Cell]:
    """Row-major cell order."""
    return [(x, y) for y in range(height) for x in range(width)]


def cells_by_column(cells: list[Cell]) -> dict[int, set[int]]:
    columns: dict[int, set[int]] = {}
    for x, y in cells:
        columns.setdefault(x, set()).add(y)
    return columns
