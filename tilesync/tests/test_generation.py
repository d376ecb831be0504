import random

import pytest

from tilesync.common.constants import LETTER_DISTRIBUTION
from tilesync.common.errors import GenerationFailure
from tilesync.engine.generation import WordFinder, generate_board
from tilesync.engine.state import Board, Tile
from tilesync.engine.tiles import TileSource
from tilesync.engine.words import WordListOracle


class CountingOracle:
    def __init__(self, words=None):
        self.words = words
        self.calls = 0

    def is_valid_word(self, word: str) -> bool:
        self.calls += 1
        if self.words is None:
            return True
        return word in self.words


def _board_from(rows) -> Board:
    tiles = tuple(
        tuple(
            Tile(f"t{x}{y}", letter, LETTER_DISTRIBUTION[letter][1], x, y)
            for x, letter in enumerate(row)
        )
        for y, row in enumerate(rows)
    )
    return Board(width=len(rows[0]), height=len(rows), tiles=tiles)


def test_finder_follows_diagonals():
    board = _board_from(["CX", "TA"])
    finder = WordFinder(CountingOracle({"CAT", "ACT", "TAX"}))
    assert sorted(finder.find(board)) == ["ACT", "CAT", "TAX"]


def test_finder_never_reuses_a_cell():
    board = _board_from(["CAT"])
    finder = WordFinder(CountingOracle({"CAT", "TAC", "TACT", "CATA"}))
    assert sorted(finder.find(board)) == ["CAT", "TAC"]


def test_finder_respects_length_bounds():
    board = _board_from(["ATONE"])
    finder = WordFinder(CountingOracle({"AT", "TON", "TONE", "ATONE"}), max_length=4)
    assert sorted(finder.find(board)) == ["TON", "TONE"]


def test_finder_stops_at_target_count_and_caches():
    board = _board_from(["ABC", "DEF", "GHI"])
    oracle = CountingOracle()
    finder = WordFinder(oracle)
    words = finder.find(board, target_count=3)
    assert len(words) == 3
    calls = oracle.calls
    assert finder.find(board, target_count=3) == words
    assert oracle.calls == calls


def test_finder_cache_is_bounded():
    finder = WordFinder(CountingOracle(), cache_size=2)
    for letters in ("ABC", "DEF", "GHI"):
        finder.find(_board_from([letters]))
    assert len(finder._cache) == 2


def test_generate_board_fills_every_cell():
    board = generate_board(CountingOracle(), TileSource(random.Random(1)), min_words=5)
    assert board.sequence == 0
    assert len(list(board.iter_tiles())) == 25
    assert all(tile.letter in LETTER_DISTRIBUTION for tile in board.iter_tiles())


def test_generate_board_is_reproducible_with_seed():
    first = generate_board(CountingOracle(), TileSource(random.Random(5)), min_words=3)
    second = generate_board(CountingOracle(), TileSource(random.Random(5)), min_words=3)
    assert first == second


def test_generate_board_fails_after_bounded_attempts():
    oracle = CountingOracle(set())
    with pytest.raises(GenerationFailure):
        generate_board(oracle, TileSource(random.Random(1)), min_words=1, max_attempts=3)


def test_word_list_oracle_loads_file(tmp_path):
    word_file = tmp_path / "words.txt"
    word_file.write_text("# comment\ncat\nAct\n\ntax\n", encoding="utf-8")
    oracle = WordListOracle.from_path(str(word_file))
    assert len(oracle) == 3
    assert oracle.is_valid_word("cat")
    assert oracle.is_valid_word(" TAX ")
    assert not oracle.is_valid_word("dog")
    assert not oracle.is_valid_word("a")


def test_bundled_word_list_loads():
    from tilesync.common.config import DEFAULT_WORD_LIST

    oracle = WordListOracle.from_path(DEFAULT_WORD_LIST)
    assert len(oracle) > 500
    assert oracle.is_valid_word("stone")
