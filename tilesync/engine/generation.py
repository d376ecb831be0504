from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque

from tilesync.common.constants import (
    BOARD_HEIGHT,
    BOARD_WIDTH,
    MAX_GENERATION_ATTEMPTS,
    MAX_WORD_LENGTH,
    MIN_WORD_LENGTH,
    MIN_WORDS_REQUIRED,
    SOLVER_CACHE_SIZE,
)
from tilesync.common.errors import GenerationFailure
from tilesync.engine.geometry import adjacent_cells, all_cells
from tilesync.engine.state import Board
from tilesync.engine.tiles import TileSource
from tilesync.engine.words import WordOracle

logger = logging.getLogger(__name__)


class WordFinder:
    """Breadth-first word search over 8-connected paths, no cell reused.

    Results are memoized per board layout in a bounded cache.
    """

    def __init__(
        self,
        oracle: WordOracle,
        min_length: int = MIN_WORD_LENGTH,
        max_length: int = MAX_WORD_LENGTH,
        cache_size: int = SOLVER_CACHE_SIZE,
    ) -> None:
        self.oracle = oracle
        self.min_length = min_length
        self.max_length = max_length
        self.cache_size = cache_size
        self._cache: OrderedDict[str, list[str]] = OrderedDict()

    def find(self, board: Board, target_count: int | None = None) -> list[str]:
        key = f"{board.width}x{board.height}-{board.letters()}-{target_count}"
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        found: dict[str, None] = {}
        for start in all_cells(board.width, board.height):
            if target_count is not None and len(found) >= target_count:
                break
            queue = deque([(start, board.tile_at(start).letter, (start,))])
            while queue:
                if target_count is not None and len(found) >= target_count:
                    break
                cell, word, path = queue.popleft()
                if len(word) >= self.min_length and word not in found:
                    if self.oracle.is_valid_word(word):
                        found[word] = None
                if len(word) >= self.max_length:
                    continue
                for nxt in adjacent_cells(cell, board.width, board.height):
                    if nxt in path:
                        continue
                    queue.append((nxt, word + board.tile_at(nxt).letter, path + (nxt,)))
        words = list(found)
        self._cache[key] = words
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return list(words)

    def clear(self) -> None:
        self._cache.clear()


def random_board(tiles: TileSource, width: int = BOARD_WIDTH, height: int = BOARD_HEIGHT) -> Board:
    rows = tuple(tuple(tiles.draw(x, y) for x in range(width)) for y in range(height))
    return Board(width=width, height=height, tiles=rows, sequence=0)


def generate_board(
    oracle: WordOracle,
    tiles: TileSource | None = None,
    *,
    width: int = BOARD_WIDTH,
    height: int = BOARD_HEIGHT,
    min_words: int = MIN_WORDS_REQUIRED,
    max_attempts: int = MAX_GENERATION_ATTEMPTS,
    finder: WordFinder | None = None,
) -> Board:
    """Generate a full board offering at least ``min_words`` distinct words."""
    tiles = tiles if tiles is not None else TileSource()
    finder = finder if finder is not None else WordFinder(oracle)
    started = time.monotonic()
    best = 0
    for attempt in range(1, max_attempts + 1):
        board = random_board(tiles, width, height)
        words = finder.find(board, target_count=min_words)
        if len(words) >= min_words:
            logger.info(
                "Generated %sx%s board with %s+ words in %s attempts (%.1fms)",
                width,
                height,
                len(words),
                attempt,
                (time.monotonic() - started) * 1000,
            )
            return board
        best = max(best, len(words))
    raise GenerationFailure(
        f"No {width}x{height} board with {min_words} words after {max_attempts} attempts "
        f"(best {best})"
    )
