"""Wall-clock helper shared by every component that timestamps events."""

import time


def now_ms() -> float:
    """Return the current wall-clock time in milliseconds."""
    return time.time() * 1000
