from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


# epoch seconds (float)
class SystemClock:
    def now(self) -> float:
        return time.time()


# PUBLIC_INTERFACE
def within_window(ts: float, now: float, window_sec: float) -> bool:
    """True when ``ts`` falls inside the trailing window ending at ``now`` (inclusive)."""
    return (now - ts) <= window_sec
