from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from src.api.services.clock import Clock, SystemClock, within_window

logger = logging.getLogger(__name__)


class EventCategory(str, Enum):
    """Classification used to route events to the matching rule set."""

    rate_limit_block = "rate_limit_block"
    performance_issue = "performance_issue"
    login_attempt = "login_attempt"


@dataclass(frozen=True)
class Event:
    """One observed fact. Attributes are stored as given; readers must be defensive."""

    category: EventCategory
    timestamp: float
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, **self.attributes}


DEFAULT_RETENTION_SEC: Dict[EventCategory, int] = {
    EventCategory.rate_limit_block: 24 * 3600,
    EventCategory.performance_issue: 3600,
    EventCategory.login_attempt: 3600,
}


class EventStore:
    """
    Append-only, per-category in-memory event lists.

    Every write prunes the category down to its retention horizon, so memory is
    bounded by the number of events per horizon (single-process only; multiple
    instances each see a partial view).
    """

    def __init__(self, retention_sec: Optional[Mapping[EventCategory, int]] = None, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._retention: Dict[EventCategory, int] = dict(DEFAULT_RETENTION_SEC)
        if retention_sec:
            self._retention.update(retention_sec)
        self._events: Dict[EventCategory, List[Event]] = {c: [] for c in EventCategory}

    # PUBLIC_INTERFACE
    def record(self, category: EventCategory, attributes: Optional[Mapping[str, Any]] = None) -> Event:
        """Append a timestamped event, then drop entries older than the category's retention."""
        event = Event(category=category, timestamp=self._clock.now(), attributes=dict(attributes or {}))
        self._events[category].append(event)
        self._prune_category(category, event.timestamp)
        return event

    def _prune_category(self, category: EventCategory, now: float) -> int:
        cutoff = now - self._retention[category]
        before = self._events[category]
        kept = [e for e in before if e.timestamp > cutoff]
        self._events[category] = kept
        return len(before) - len(kept)

    # PUBLIC_INTERFACE
    def prune(self, category: Optional[EventCategory] = None) -> int:
        """Prune one or all categories against the current time; returns the number dropped."""
        now = self._clock.now()
        categories = [category] if category else list(EventCategory)
        dropped = sum(self._prune_category(c, now) for c in categories)
        if dropped:
            logger.debug("Event store pruned %s stale events", dropped)
        return dropped

    def events(self, category: EventCategory) -> List[Event]:
        """Snapshot of the retained events for a category, oldest first."""
        return list(self._events[category])

    def recent(self, category: EventCategory, window_sec: float, now: Optional[float] = None) -> List[Event]:
        """Events of a category inside a trailing window narrower than (or equal to) the retention."""
        ref = self._clock.now() if now is None else now
        return [e for e in self._events[category] if within_window(e.timestamp, ref, window_sec)]

    def count(self, category: EventCategory, window_sec: Optional[float] = None) -> int:
        if window_sec is None:
            return len(self._events[category])
        return len(self.recent(category, window_sec))
