from __future__ import annotations

import itertools
import random

from tilesync.common.constants import LETTER_BAG, LETTER_DISTRIBUTION
from tilesync.engine.state import Tile


class TileSource:
    """Draws letters from the weighted letter bag and hands out fresh tile ids.

    Pass a seeded ``random.Random`` to reproduce exact boards and diffs.
    """

    def __init__(self, rng: random.Random | None = None, id_prefix: str = "tile") -> None:
        self.rng = rng if rng is not None else random.Random()
        self.id_prefix = id_prefix
        self._ids = itertools.count(1)

    def next_id(self) -> str:
        return f"{self.id_prefix}-{next(self._ids)}"

    def draw_letter(self) -> tuple[str, int]:
        letter = self.rng.choice(LETTER_BAG)
        return letter, LETTER_DISTRIBUTION[letter][1]

    def draw(self, x: int, y: int) -> Tile:
        letter, points = self.draw_letter()
        return Tile(id=self.next_id(), letter=letter, points=points, x=x, y=y)
