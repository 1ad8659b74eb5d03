from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from src.api.config import AlertingConfig
from src.api.schemas.common import Severity
from src.api.services.event_store import Event, EventCategory, EventStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleConfig:
    """Static definition of a named threshold check over a trailing window."""

    name: str
    category: EventCategory
    threshold: int
    window_sec: int
    severity: Severity
    cooldown_sec: int
    # Only used by slow_critical_endpoint.
    duration_threshold_ms: Optional[int] = None


@dataclass
class RuleMatch:
    """A breached rule, ready to go through the cooldown gate."""

    rule: RuleConfig
    rule_key: str
    details: Dict[str, Any] = field(default_factory=dict)


RuleCheck = Callable[[RuleConfig, EventStore, Event, float], Optional[RuleMatch]]


def _safe_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except Exception:
        return None


def _unique(values: List[Any]) -> List[Any]:
    """Distinct non-null values in first-seen order."""
    seen = set()
    out: List[Any] = []
    for v in values:
        if v is None:
            continue
        key = v if isinstance(v, (str, int, float)) else repr(v)
        if key in seen:
            continue
        seen.add(key)
        out.append(v)
    return out


def _minutes(window_sec: int) -> float:
    m = window_sec / 60.0
    return int(m) if m.is_integer() else round(m, 2)


def top_ips(events: List[Event], limit: int = 5) -> List[Dict[str, Any]]:
    counts = Counter(e.get("ip") for e in events if e.get("ip") is not None)
    return [{"ip": ip, "count": n} for ip, n in counts.most_common(limit)]


def status_code_distribution(events: List[Event]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for e in events:
        code = e.get("statusCode")
        counts[str(code)] = counts.get(str(code), 0) + 1
    return counts


def _is_server_error(e: Event) -> bool:
    code = _safe_float(e.get("statusCode"))
    return code is not None and code >= 500


def _is_slow_critical(e: Event, endpoint: Any, duration_threshold: float) -> bool:
    if e.get("endpoint") != endpoint or not bool(e.get("critical")):
        return False
    duration = _safe_float(e.get("duration"))
    return duration is not None and duration > duration_threshold


def check_excessive_rate_limiting(rule: RuleConfig, store: EventStore, current: Event, now: float) -> Optional[RuleMatch]:
    recent = store.recent(rule.category, rule.window_sec, now)
    if len(recent) < rule.threshold:
        return None
    return RuleMatch(
        rule=rule,
        rule_key=rule.name,
        details={
            "count": len(recent),
            "timeWindowMinutes": _minutes(rule.window_sec),
            "uniqueIPs": len(_unique([e.get("ip") for e in recent])),
            "endpoints": _unique([e.get("endpoint") for e in recent]),
            "recentEvents": [e.to_dict() for e in recent[-5:]],
        },
    )


def check_suspicious_ip(rule: RuleConfig, store: EventStore, current: Event, now: float) -> Optional[RuleMatch]:
    ip = current.get("ip")
    if not ip:
        return None
    same_ip = [e for e in store.recent(rule.category, rule.window_sec, now) if e.get("ip") == ip]
    if len(same_ip) < rule.threshold:
        return None
    return RuleMatch(
        rule=rule,
        rule_key=f"{rule.name}:{ip}",
        details={
            "ip": ip,
            "count": len(same_ip),
            "timeWindowMinutes": _minutes(rule.window_sec),
            "endpoints": _unique([e.get("endpoint") for e in same_ip]),
            "userAgents": _unique([e.get("userAgent") for e in same_ip]),
            "recentEvents": [e.to_dict() for e in same_ip[-3:]],
        },
    )


def check_massive_attack(rule: RuleConfig, store: EventStore, current: Event, now: float) -> Optional[RuleMatch]:
    recent = store.recent(rule.category, rule.window_sec, now)
    unique_ips = _unique([e.get("ip") for e in recent])
    if len(unique_ips) < rule.threshold:
        return None
    return RuleMatch(
        rule=rule,
        rule_key=rule.name,
        details={
            "uniqueIPCount": len(unique_ips),
            "totalBlocks": len(recent),
            "timeWindowMinutes": _minutes(rule.window_sec),
            "topIPs": top_ips(recent, 10),
            "endpoints": _unique([e.get("endpoint") for e in recent]),
        },
    )


def check_slow_critical_endpoint(rule: RuleConfig, store: EventStore, current: Event, now: float) -> Optional[RuleMatch]:
    duration_threshold = float(rule.duration_threshold_ms or 0)
    endpoint = current.get("endpoint")
    if endpoint is None or not _is_slow_critical(current, endpoint, duration_threshold):
        return None

    slow = [
        e
        for e in store.recent(rule.category, rule.window_sec, now)
        if _is_slow_critical(e, endpoint, duration_threshold)
    ]
    if len(slow) < rule.threshold:
        return None

    durations = [float(e.get("duration")) for e in slow]
    return RuleMatch(
        rule=rule,
        rule_key=f"{rule.name}:{endpoint}",  # one cooldown per endpoint
        details={
            "endpoint": endpoint,
            "averageDuration": sum(durations) / len(durations),
            "threshold": rule.duration_threshold_ms,
            "count": len(slow),
        },
    )


def check_high_error_rate(rule: RuleConfig, store: EventStore, current: Event, now: float) -> Optional[RuleMatch]:
    errors = [e for e in store.recent(rule.category, rule.window_sec, now) if _is_server_error(e)]
    if len(errors) < rule.threshold:
        return None
    return RuleMatch(
        rule=rule,
        rule_key=rule.name,
        details={
            "errorCount": len(errors),
            "timeWindowMinutes": _minutes(rule.window_sec),
            "endpoints": _unique([e.get("endpoint") for e in errors]),
            "statusCodes": status_code_distribution(errors),
        },
    )


RULE_CHECKS: Dict[str, RuleCheck] = {
    "excessive_rate_limiting": check_excessive_rate_limiting,
    "suspicious_ip": check_suspicious_ip,
    "massive_attack": check_massive_attack,
    "slow_critical_endpoint": check_slow_critical_endpoint,
    "high_error_rate": check_high_error_rate,
}


# PUBLIC_INTERFACE
def build_rule_catalogue(config: AlertingConfig) -> List[RuleConfig]:
    """Build the fixed rule catalogue (evaluation order) from configuration."""

    def mk(name: str, category: EventCategory, settings, duration_ms: Optional[int] = None) -> RuleConfig:
        return RuleConfig(
            name=name,
            category=category,
            threshold=int(settings.threshold),
            window_sec=int(settings.window_sec),
            severity=settings.severity,
            cooldown_sec=int(settings.cooldown_sec),
            duration_threshold_ms=duration_ms,
        )

    return [
        mk("excessive_rate_limiting", EventCategory.rate_limit_block, config.excessive_rate_limiting),
        mk("suspicious_ip", EventCategory.rate_limit_block, config.suspicious_ip),
        mk("massive_attack", EventCategory.rate_limit_block, config.massive_attack),
        mk(
            "slow_critical_endpoint",
            EventCategory.performance_issue,
            config.slow_critical_endpoint,
            duration_ms=config.slow_endpoint_duration_ms,
        ),
        mk("high_error_rate", EventCategory.performance_issue, config.high_error_rate),
    ]


class RuleEvaluator:
    """Evaluates every rule bound to an event's category, in catalogue order."""

    def __init__(self, store: EventStore, rules: List[RuleConfig]):
        self._store = store
        self._rules = list(rules)

    @property
    def rules(self) -> List[RuleConfig]:
        return list(self._rules)

    def rules_for(self, category: EventCategory) -> List[RuleConfig]:
        return [r for r in self._rules if r.category == category]

    # PUBLIC_INTERFACE
    def evaluate(self, event: Event) -> List[RuleMatch]:
        """Return the rules breached after ``event`` was recorded; a single event may breach several."""
        matches: List[RuleMatch] = []
        for rule in self.rules_for(event.category):
            check = RULE_CHECKS.get(rule.name)
            if check is None:
                logger.warning("No check registered for rule=%s", rule.name)
                continue
            try:
                match = check(rule, self._store, event, event.timestamp)
            except Exception:
                logger.exception("Rule evaluation failed for rule=%s", rule.name)
                continue
            if match is not None:
                matches.append(match)
        return matches
