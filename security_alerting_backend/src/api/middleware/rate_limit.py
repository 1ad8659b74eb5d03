from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from fastapi import HTTPException, Request, status

from src.api.services.clock import Clock, SystemClock
from src.api.state import AppState, get_state

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
def report_rate_limit_block(state: AppState, block: Mapping[str, Any]) -> None:
    """Hand a rate-limit block to both the security audit log and the alert engine."""
    state.security_logger.log_rate_limit_block(block)
    state.alert_service.record_rate_limit_block(
        {
            "ip": block.get("ip"),
            "endpoint": block.get("endpoint"),
            "userId": block.get("userId") or block.get("email"),
            "userAgent": block.get("userAgent"),
        }
    )


def _ip_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """
    Fixed-window request limiter usable as a FastAPI dependency.

    Example: ``@router.post("/login", dependencies=[Depends(RateLimiter("/login", 5, 900))])``
    """

    def __init__(
        self,
        endpoint: str,
        limit: int,
        window_sec: int,
        key_func: Optional[Callable[[Request], str]] = None,
        message: str = "Too many requests. Try again in a few minutes.",
        clock: Optional[Clock] = None,
    ):
        self.endpoint = endpoint
        self.limit = max(1, int(limit))
        self.window_sec = max(1, int(window_sec))
        self._key_func = key_func or _ip_key
        self._message = message
        self._clock = clock or SystemClock()
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._last_purge = self._clock.now()

    def hit(self, key: str) -> bool:
        """Count a request for ``key``; False once the key exceeded its limit in the current window."""
        now = self._clock.now()
        if now - self._last_purge >= self.window_sec:
            self.purge_expired(now)
        started, count = self._hits.get(key, (now, 0))
        if now - started >= self.window_sec:
            started, count = now, 0
        count += 1
        self._hits[key] = (started, count)
        return count <= self.limit

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop keys whose window has passed. Returns how many were removed."""
        now = self._clock.now() if now is None else now
        self._last_purge = now
        expired = [k for k, (started, _) in self._hits.items() if now - started >= self.window_sec]
        for k in expired:
            del self._hits[k]
        return len(expired)

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    async def __call__(self, request: Request) -> None:
        if self.hit(self._key_func(request)):
            return

        retry_after = math.ceil(self.window_sec / 60)
        try:
            report_rate_limit_block(
                get_state(request.app),
                {
                    "endpoint": self.endpoint,
                    "ip": request.client.host if request.client else None,
                    "userAgent": request.headers.get("user-agent"),
                    "userId": getattr(request.state, "user_id", None),
                    "limit": self.limit,
                    "windowMs": self.window_sec * 1000,
                },
            )
        except Exception:
            logger.exception("Failed reporting rate limit block endpoint=%s", self.endpoint)

        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": self._message, "retryAfter": retry_after},
        )
