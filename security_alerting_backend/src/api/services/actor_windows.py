from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from src.api.config import ActorSettings
from src.api.services.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class ActorWindows:
    """
    Keyed sliding-window counters (one ordered timestamp deque per actor key).

    Windows are created lazily, pruned on every access and dropped on reset.
    Timestamps within a key are non-decreasing since recording happens on a
    single event loop.
    """

    def __init__(self, window_sec: float, clock: Optional[Clock] = None):
        self.window_sec = float(window_sec)
        self._clock = clock or SystemClock()
        self._windows: Dict[str, Deque[float]] = {}

    def prune(self, key: str, now: Optional[float] = None) -> int:
        window = self._windows.get(key)
        if window is None:
            return 0
        ref = self._clock.now() if now is None else now
        dropped = 0
        while window and ref - window[0] >= self.window_sec:
            window.popleft()
            dropped += 1
        return dropped

    # PUBLIC_INTERFACE
    def record(self, key: str) -> int:
        """Prune the key's window, append ``now`` and return the resulting count."""
        now = self._clock.now()
        window = self._windows.setdefault(key, deque())
        self.prune(key, now)
        window.append(now)
        return len(window)

    def count(self, key: str) -> int:
        self.prune(key)
        return len(self._windows.get(key) or ())

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._windows.keys())

    def purge_idle(self) -> int:
        """Drop keys whose windows have emptied out."""
        now = self._clock.now()
        idle = []
        for key in list(self._windows):
            self.prune(key, now)
            if not self._windows[key]:
                idle.append(key)
        for key in idle:
            del self._windows[key]
        return len(idle)

    def __len__(self) -> int:
        return len(self._windows)


@dataclass
class ActorPatternHit:
    pattern: str
    key: str
    count: int
    window_sec: float
    attributes: Dict[str, Any] = field(default_factory=dict)


class ActorPatternDetector:
    """
    Per-actor abuse detection, independent of the rule catalogue.

    Dedup here is "fire once, then reset the key": the next qualifying event after
    a hit starts counting from zero again.
    """

    def __init__(
        self,
        failed_login: ActorSettings,
        rate_limit: ActorSettings,
        clock: Optional[Clock] = None,
    ):
        self._failed_login_threshold = int(failed_login.threshold)
        self._rate_limit_threshold = int(rate_limit.threshold)
        self.failed_logins = ActorWindows(failed_login.window_sec, clock)
        self.rate_limit_blocks = ActorWindows(rate_limit.window_sec, clock)

    @staticmethod
    def login_key(email: Optional[str], ip: Optional[str]) -> str:
        return f"{email or ''}:{ip or ''}"

    @staticmethod
    def rate_limit_key(ip: Optional[str]) -> str:
        return f"rate_limit:{ip or ''}"

    # PUBLIC_INTERFACE
    def record_failed_login(self, email: Optional[str], ip: Optional[str], user_agent: Optional[str] = None) -> Optional[ActorPatternHit]:
        """Track a failed login for ``email:ip``; returns a hit (and resets the key) at the threshold."""
        key = self.login_key(email, ip)
        count = self.failed_logins.record(key)
        if count < self._failed_login_threshold:
            return None
        self.failed_logins.reset(key)
        logger.warning("Repeated failed logins detected key=%s attempts=%s", key, count)
        return ActorPatternHit(
            pattern="repeated_failed_logins",
            key=key,
            count=count,
            window_sec=self.failed_logins.window_sec,
            attributes={"email": email, "ip": ip, "userAgent": user_agent},
        )

    # PUBLIC_INTERFACE
    def record_rate_limit_block(self, ip: Optional[str], endpoint: Optional[str] = None) -> Optional[ActorPatternHit]:
        """Track a rate-limit block for one IP across endpoints; hit + reset at the threshold."""
        key = self.rate_limit_key(ip)
        count = self.rate_limit_blocks.record(key)
        if count < self._rate_limit_threshold:
            return None
        self.rate_limit_blocks.reset(key)
        logger.warning("Excessive rate limiting from ip=%s blocks=%s", ip, count)
        return ActorPatternHit(
            pattern="excessive_rate_limiting",
            key=key,
            count=count,
            window_sec=self.rate_limit_blocks.window_sec,
            attributes={"ip": ip, "endpoint": endpoint},
        )

    def purge_idle(self) -> int:
        return self.failed_logins.purge_idle() + self.rate_limit_blocks.purge_idle()

    def tracked(self) -> Dict[str, int]:
        return {"failedLogins": len(self.failed_logins), "rateLimitBlocks": len(self.rate_limit_blocks)}
