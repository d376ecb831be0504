import random
from dataclasses import replace

from tilesync.engine.checksum import canonical_payload, checksum
from tilesync.engine.generation import random_board
from tilesync.engine.state import Board, Tile
from tilesync.engine.tiles import TileSource


def _replace_tile(board: Board, pos, **changes) -> Board:
    x, y = pos
    rows = [list(row) for row in board.tiles]
    rows[y][x] = replace(rows[y][x], **changes)
    return replace(board, tiles=tuple(tuple(row) for row in rows))


def test_canonical_payload_is_row_major_letter_points_x_y():
    tiles = ((Tile("a", "Q", 10, 0, 0), Tile("b", "E", 1, 1, 0)),)
    assert (
        canonical_payload(2, 1, tiles)
        == '{"width":2,"height":1,"tiles":[["Q",10,0,0],["E",1,1,0]]}'
    )


def test_checksum_is_deterministic_sha256_hex():
    board = random_board(TileSource(random.Random(3)))
    first = checksum(board)
    assert first == checksum(board)
    assert len(first) == 64
    int(first, 16)


def test_checksum_ignores_ids_and_sequence():
    board = random_board(TileSource(random.Random(3)))
    renamed = _replace_tile(board, (2, 2), id="other")
    assert checksum(renamed) == checksum(board)
    assert checksum(replace(board, sequence=42)) == checksum(board)


def test_any_single_field_change_changes_checksum():
    board = random_board(TileSource(random.Random(3)))
    tile = board.tile_at((4, 0))
    before = checksum(board)
    letter = "Z" if tile.letter != "Z" else "Q"
    assert checksum(_replace_tile(board, (4, 0), letter=letter)) != before
    assert checksum(_replace_tile(board, (4, 0), points=tile.points + 1)) != before


def test_identical_content_from_different_sources_matches():
    first = random_board(TileSource(random.Random(8), id_prefix="server"))
    second = random_board(TileSource(random.Random(8), id_prefix="client"))
    assert first.tile_at((0, 0)).id != second.tile_at((0, 0)).id
    assert checksum(first) == checksum(second)
