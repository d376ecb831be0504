from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class WordOracle(Protocol):
    """Word-validity collaborator consumed by board generation."""

    def is_valid_word(self, word: str) -> bool: ...


class WordListOracle:
    """In-memory word set loaded from a newline-separated word list."""

    def __init__(self, words: Iterable[str]) -> None:
        self._words = {w.strip().upper() for w in words if w.strip()}

    @classmethod
    def from_path(cls, path: str) -> WordListOracle:
        text = Path(path).read_text(encoding="utf-8")
        oracle = cls(line for line in text.splitlines() if not line.startswith("#"))
        logger.info("Loaded %s words from %s", len(oracle), path)
        return oracle

    def __len__(self) -> int:
        return len(self._words)

    def is_valid_word(self, word: str) -> bool:
        normalized = word.strip().upper()
        if len(normalized) < 2:
            return False
        return normalized in self._words
