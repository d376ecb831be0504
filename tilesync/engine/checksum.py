"""Canonical board fingerprint shared by the authority and every observer.

The board is serialized row-major as compact JSON, each tile contributing
``[letter, points, x, y]`` in that order, prefixed by the dimensions, and
hashed with SHA-256.  Tile ids and sequence numbers are not part of the
content and do not affect the checksum.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Sequence

from tilesync.engine.state import Board, Tile

CHECKSUM_ALGORITHM = "sha256"


def canonical_payload(width: int, height: int, rows: Iterable[Sequence[Tile]]) -> str:
    tiles = [[tile.letter, tile.points, tile.x, tile.y] for row in rows for tile in row]
    return json.dumps(
        {"width": width, "height": height, "tiles": tiles},
        separators=(",", ":"),
        ensure_ascii=True,
    )


def checksum_rows(width: int, height: int, rows: Iterable[Sequence[Tile]]) -> str:
    payload = canonical_payload(width, height, rows)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def checksum(board: Board) -> str:
    return checksum_rows(board.width, board.height, board.tiles)
