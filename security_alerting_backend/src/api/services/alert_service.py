from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from src.api.config import AlertingConfig
from src.api.services.actor_windows import ActorPatternDetector
from src.api.services.clock import Clock, SystemClock
from src.api.services.cooldown import CooldownGate
from src.api.services.event_store import Event, EventCategory, EventStore
from src.api.services.metrics import MetricsRegistry
from src.api.services.notifications import AlertPayload, NotificationDispatcher
from src.api.services.rules import RuleEvaluator, RuleMatch
from src.api.services.security_log import SecurityLogWriter

logger = logging.getLogger(__name__)

TEST_ALERT_TYPES = ("rate_limiting", "performance", "errors")

_HOUR = 3600
_DAY = 24 * _HOUR


def _test_events(alert_type: str) -> List[tuple]:
    if alert_type == "rate_limiting":
        return [
            (
                EventCategory.rate_limit_block,
                {
                    "ip": f"192.168.1.{100 + i}",
                    "endpoint": "/login",
                    "userId": f"test{i}@example.com",
                    "userAgent": "Test-Agent/1.0",
                },
            )
            for i in range(12)
        ]
    if alert_type == "performance":
        return [
            (
                EventCategory.performance_issue,
                {
                    "endpoint": "/api/dashboard/quick-stats",
                    "duration": 4000 + i * 500,
                    "statusCode": 200,
                    "critical": True,
                    "method": "GET",
                },
            )
            for i in range(4)
        ]
    if alert_type == "errors":
        return [
            (
                EventCategory.performance_issue,
                {
                    "endpoint": "/api/dashboard/tasks-metrics",
                    "duration": 1000,
                    "statusCode": 500,
                    "critical": False,
                    "method": "GET",
                },
            )
            for _ in range(12)
        ]
    raise ValueError(f"unknown test alert type: {alert_type}")


class AlertService:
    """
    Producer-facing entry point of the alerting engine.

    record -> evaluate -> cooldown gate -> audit line -> queued dispatch. The whole
    path runs synchronously in the caller; only notification delivery is deferred.
    """

    def __init__(
        self,
        config: AlertingConfig,
        store: EventStore,
        evaluator: RuleEvaluator,
        gate: CooldownGate,
        dispatcher: NotificationDispatcher,
        security_log: SecurityLogWriter,
        metrics: MetricsRegistry,
        detector: Optional[ActorPatternDetector] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.store = store
        self.evaluator = evaluator
        self.gate = gate
        self.dispatcher = dispatcher
        self.security_log = security_log
        self.metrics = metrics
        self.detector = detector
        self._clock = clock or SystemClock()
        self._last_log_cleanup: Optional[float] = None

    def _fire(self, event: Event, match: RuleMatch) -> Optional[AlertPayload]:
        rule = match.rule
        if not self.gate.try_fire(match.rule_key, rule.cooldown_sec):
            return None

        alert = AlertPayload(
            type=rule.name,
            severity=rule.severity,
            rule_key=match.rule_key,
            details=match.details,
            timestamp=datetime.fromtimestamp(event.timestamp, tz=timezone.utc),
        )
        self.security_log.write(
            {
                "event": "security_alert_triggered",
                "alertType": alert.type,
                "alertKey": alert.rule_key,
                "details": alert.details,
                "severity": alert.severity.value,
            }
        )
        logger.error("Security alert fired type=%s key=%s severity=%s", alert.type, alert.rule_key, alert.severity.value)
        self.dispatcher.submit(alert)
        return alert

    def _process(self, category: EventCategory, attributes: Mapping[str, Any]) -> List[AlertPayload]:
        event = self.store.record(category, attributes)
        fired: List[AlertPayload] = []
        for match in self.evaluator.evaluate(event):
            alert = self._fire(event, match)
            if alert is not None:
                fired.append(alert)
        return fired

    # PUBLIC_INTERFACE
    def record_rate_limit_block(self, data: Mapping[str, Any]) -> List[AlertPayload]:
        """Record a rate-limit block and fire any breached rule. Never raises; returns the alerts fired."""
        try:
            attrs = {
                "ip": data.get("ip"),
                "endpoint": data.get("endpoint"),
                "userId": data.get("userId"),
                "userAgent": data.get("userAgent"),
            }
            return self._process(EventCategory.rate_limit_block, attrs)
        except Exception:
            logger.exception("Failed recording rate limit block ip=%s", data.get("ip") if data else None)
            return []

    # PUBLIC_INTERFACE
    def record_performance_issue(self, data: Mapping[str, Any]) -> List[AlertPayload]:
        """Record a slow or failed request, audit it, and fire any breached rule. Never raises."""
        try:
            attrs = {
                "endpoint": data.get("endpoint"),
                "duration": data.get("duration"),
                "statusCode": data.get("statusCode"),
                "critical": bool(data.get("critical")),
                "method": data.get("method"),
                "userId": data.get("userId"),
                "ip": data.get("ip"),
            }
            self.security_log.write(
                {
                    "event": "performance_issue",
                    **attrs,
                    "severity": "critical" if attrs["critical"] else "warning",
                }
            )
            return self._process(EventCategory.performance_issue, attrs)
        except Exception:
            logger.exception("Failed recording performance issue endpoint=%s", data.get("endpoint") if data else None)
            return []

    # PUBLIC_INTERFACE
    def inject_test_events(self, alert_type: str) -> int:
        """Feed the synthetic burst for ``alert_type`` through the normal pipeline; returns events injected."""
        events = _test_events(alert_type)
        for category, attrs in events:
            if category == EventCategory.rate_limit_block:
                self.record_rate_limit_block(attrs)
            else:
                self.record_performance_issue(attrs)
        logger.info("Injected %s synthetic events for test alert type=%s", len(events), alert_type)
        return len(events)

    # PUBLIC_INTERFACE
    def get_alert_stats(self) -> Dict[str, Any]:
        """Snapshot of counters, cooldowns, actor windows and dispatcher state."""
        now = self._clock.now()
        return {
            "rateLimitBlocks": {
                "lastHour": self.store.count(EventCategory.rate_limit_block, _HOUR),
                "lastDay": self.store.count(EventCategory.rate_limit_block, _DAY),
                "total": self.store.count(EventCategory.rate_limit_block),
            },
            "performanceIssues": {
                "lastHour": self.store.count(EventCategory.performance_issue, _HOUR),
                "total": self.store.count(EventCategory.performance_issue),
            },
            "activeCooldowns": len(self.gate.active()),
            "lastAlerts": [
                {
                    "key": r.rule_key,
                    "firedAt": datetime.fromtimestamp(r.fired_at, tz=timezone.utc).isoformat(),
                    "cooldownRemainingSec": max(0.0, r.expires_at() - now),
                }
                for r in self.gate.last_fired()[:20]
            ],
            "actorWindows": self.detector.tracked() if self.detector else {},
            "notifications": {
                "running": self.dispatcher.running,
                "pending": self.dispatcher.pending,
                "dropped": self.dispatcher.dropped,
                "channels": self.dispatcher.channel_status(),
            },
            "metrics": self.metrics.snapshot(),
        }

    async def housekeeping_tick(self) -> None:
        dropped = self.store.prune()
        expired = self.gate.purge_expired()
        idle = self.detector.purge_idle() if self.detector else 0
        if dropped or expired or idle:
            logger.debug("Housekeeping dropped events=%s cooldowns=%s actorKeys=%s", dropped, expired, idle)

        now = self._clock.now()
        if self._last_log_cleanup is None or now - self._last_log_cleanup >= _DAY:
            self._last_log_cleanup = now
            await asyncio.to_thread(self.security_log.clean_old_entries, self.config.security_log_retention_days)

    # PUBLIC_INTERFACE
    async def housekeeping_loop(self, shutdown_event: asyncio.Event) -> None:
        """
        Background loop that bounds in-memory state between producer calls.

        - Prunes every event category to its retention horizon
        - Drops expired cooldown records and emptied actor windows
        - Applies the security log retention once a day
        """
        interval = max(1, int(self.config.housekeeping_interval_sec))
        logger.info("Alert housekeeping started (interval=%ss)", interval)

        while not shutdown_event.is_set():
            try:
                await self.housekeeping_tick()
            except Exception:
                logger.exception("Alert housekeeping tick failed")

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Alert housekeeping stopped")
