from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORD_LIST = str(Path(__file__).resolve().parents[1] / "assets" / "words.txt")


def _env_bool(value: str, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _env_int_or_none(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return [
            "http://localhost:8000",
            "http://127.0.0.1:8000",
        ]
    return [origin.strip() for origin in value.split(",") if origin.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment variables.

    Only the API layer reads these; engine, coordinator and monitor take
    explicit constructor arguments.
    """

    board_width: int = int(os.getenv("TILESYNC_BOARD_WIDTH", "5"))
    board_height: int = int(os.getenv("TILESYNC_BOARD_HEIGHT", "5"))
    min_words: int = int(os.getenv("TILESYNC_MIN_WORDS", "10"))
    max_generation_attempts: int = int(os.getenv("TILESYNC_MAX_GENERATION_ATTEMPTS", "50"))
    max_word_length: int = int(os.getenv("TILESYNC_MAX_WORD_LENGTH", "5"))
    random_seed: int | None = _env_int_or_none(os.getenv("TILESYNC_RANDOM_SEED"))
    word_list_path: str = os.getenv("TILESYNC_WORD_LIST", DEFAULT_WORD_LIST)
    monitor_interval_seconds: float = float(os.getenv("TILESYNC_MONITOR_INTERVAL", "5.0"))
    enable_monitor: bool = _env_bool(os.getenv("TILESYNC_ENABLE_MONITOR", "1"))
    metric_window: int = int(os.getenv("TILESYNC_METRIC_WINDOW", "100"))
    short_metric_window: int = int(os.getenv("TILESYNC_SHORT_METRIC_WINDOW", "50"))
    event_capacity: int = int(os.getenv("TILESYNC_EVENT_CAPACITY", "100"))
    alert_capacity: int = int(os.getenv("TILESYNC_ALERT_CAPACITY", "50"))
    observer_queue_size: int = int(os.getenv("TILESYNC_OBSERVER_QUEUE", "64"))
    snapshot_broadcast_seconds: float = float(
        os.getenv("TILESYNC_SNAPSHOT_BROADCAST_SECONDS", "0")
    )
    cors_origins: list[str] = field(
        default_factory=lambda: _parse_origins(os.getenv("TILESYNC_CORS_ORIGINS"))
    )
    api_key: str | None = os.getenv("TILESYNC_API_KEY")


settings = Settings()
