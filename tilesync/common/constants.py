from __future__ import annotations

BOARD_WIDTH = 5
BOARD_HEIGHT = 5

# Tournament letter distribution: letter -> (tiles in bag, points).
LETTER_DISTRIBUTION: dict[str, tuple[int, int]] = {
    "A": (9, 1),
    "B": (2, 3),
    "C": (2, 3),
    "D": (4, 2),
    "E": (12, 1),
    "F": (2, 4),
    "G": (3, 2),
    "H": (2, 4),
    "I": (9, 1),
    "J": (1, 8),
    "K": (1, 5),
    "L": (4, 1),
    "M": (2, 3),
    "N": (6, 1),
    "O": (8, 1),
    "P": (2, 3),
    "Q": (1, 10),
    "R": (6, 1),
    "S": (4, 1),
    "T": (6, 1),
    "U": (4, 1),
    "V": (2, 4),
    "W": (2, 4),
    "X": (1, 8),
    "Y": (2, 4),
    "Z": (1, 10),
}

LETTER_BAG: tuple[str, ...] = tuple(
    letter for letter, (count, _points) in LETTER_DISTRIBUTION.items() for _ in range(count)
)

MIN_WORDS_REQUIRED = 10
MAX_GENERATION_ATTEMPTS = 50
MIN_WORD_LENGTH = 3
MAX_WORD_LENGTH = 5
SOLVER_CACHE_SIZE = 2000

# Resync coordinator
RESYNC_TIMEOUT_SECONDS = 5.0
RESYNC_MAX_RETRIES = 3
RESYNC_BACKOFF = 2.0

# Monitoring
MONITOR_INTERVAL_SECONDS = 5.0
METRIC_WINDOW_SIZE = 100
SHORT_METRIC_WINDOW_SIZE = 50
EVENT_LOG_CAPACITY = 100
ALERT_CAPACITY = 50
RECENT_EVENT_EXPORT = 100
DESYNC_WINDOW_SECONDS = 60.0
SUMMARY_WINDOW_SECONDS = 300.0

MAX_LATENCY_MS = 200.0
MAX_SYNC_VARIANCE_MS = 100.0
MAX_CHECKSUM_MISMATCHES = 3
MAX_RESOURCE_USAGE_MB = 512.0
CRITICAL_DESYNC_EVENTS = 5
