from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx

from src.api.config import AlertingConfig
from src.api.schemas.common import Severity, utc_now
from src.api.services.mailer import Mailer
from src.api.services.metrics import NOTIFICATION_FAILURES_TOTAL, SECURITY_ALERTS_TOTAL, MetricsRegistry
from src.api.services.security_log import SecurityLogWriter
from src.api.services.users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertPayload:
    """A fired alert as handed to the notification channels."""

    type: str
    severity: Severity
    rule_key: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "ruleKey": self.rule_key,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass(frozen=True)
class SuspiciousLoginNotice:
    """Notice for the owner of an account that saw a burst of failed logins."""

    email: str
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChannelResult:
    channel: str
    success: bool
    error: Optional[str] = None
    skipped: bool = False


def _join(values: Any) -> str:
    if isinstance(values, (list, tuple)):
        return ", ".join(str(v) for v in values)
    return str(values or "")


# PUBLIC_INTERFACE
def format_alert_message(alert: AlertPayload) -> str:
    """Plain-text body shared by the email, Slack and Discord channels."""
    d = alert.details
    lines = [
        f"[{alert.severity.value.upper()}] Security Alert: {alert.type}",
        f"Time: {alert.timestamp.isoformat()}",
        f"Alert Key: {alert.rule_key}",
        "",
    ]

    if alert.type == "excessive_rate_limiting":
        lines.append(f"{d.get('count')} rate limit blocks in {d.get('timeWindowMinutes')} minutes")
        lines.append(f"Unique IPs: {d.get('uniqueIPs')}")
        lines.append(f"Endpoints: {_join(d.get('endpoints'))}")
    elif alert.type == "suspicious_ip":
        lines.append(f"IP {d.get('ip')} blocked {d.get('count')} times in {d.get('timeWindowMinutes')} minutes")
        lines.append(f"Endpoints: {_join(d.get('endpoints'))}")
    elif alert.type == "massive_attack":
        lines.append(f"{d.get('uniqueIPCount')} unique IPs blocked ({d.get('totalBlocks')} total blocks)")
        lines.append(f"Time window: {d.get('timeWindowMinutes')} minutes")
    elif alert.type == "slow_critical_endpoint":
        avg = d.get("averageDuration")
        avg_s = f"{avg:.0f}" if isinstance(avg, (int, float)) else str(avg)
        lines.append(f"Critical endpoint {d.get('endpoint')} is slow")
        lines.append(f"Average duration: {avg_s}ms (threshold: {d.get('threshold')}ms)")
        lines.append(f"Slow requests: {d.get('count')}")
    elif alert.type == "high_error_rate":
        lines.append(f"{d.get('errorCount')} server errors in {d.get('timeWindowMinutes')} minutes")
        lines.append(f"Affected endpoints: {_join(d.get('endpoints'))}")
    else:
        for k, v in d.items():
            lines.append(f"{k}: {v}")

    return "\n".join(lines) + "\n"


class NotificationChannel:
    """One independent sink. ``send`` raises on failure; the dispatcher isolates it."""

    name = "channel"

    @property
    def enabled(self) -> bool:
        return True

    async def send(self, alert: AlertPayload) -> None:
        raise NotImplementedError


class LogChannel(NotificationChannel):
    name = "log"

    async def send(self, alert: AlertPayload) -> None:
        logger.error(
            "SECURITY ALERT TRIGGERED type=%s severity=%s key=%s details=%s",
            alert.type,
            alert.severity.value,
            alert.rule_key,
            alert.details,
        )


class MetricsChannel(NotificationChannel):
    name = "metrics"

    def __init__(self, registry: MetricsRegistry):
        self._registry = registry

    async def send(self, alert: AlertPayload) -> None:
        self._registry.inc(SECURITY_ALERTS_TOTAL, {"alert_type": alert.type, "severity": alert.severity.value})


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, mailer: Optional[Mailer], recipients: List[str]):
        self._mailer = mailer
        self._recipients = list(recipients)

    @property
    def enabled(self) -> bool:
        return self._mailer is not None and bool(self._recipients)

    async def send(self, alert: AlertPayload) -> None:
        subject = f"Security Alert: {alert.type} [{alert.severity.value.upper()}]"
        text = format_alert_message(alert)
        for to in self._recipients:
            await self._mailer.send_security_alert(to, subject, text, alert)  # type: ignore[union-attr]


class _WebhookChannel(NotificationChannel):
    def __init__(self, url: Optional[str], client_factory):
        self._url = url
        self._client_factory = client_factory

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def build_payload(self, alert: AlertPayload) -> Dict[str, Any]:
        raise NotImplementedError

    async def send(self, alert: AlertPayload) -> None:
        client: httpx.AsyncClient = await self._client_factory()
        res = await client.post(self._url, json=self.build_payload(alert))
        if res.status_code < 200 or res.status_code >= 300:
            raise RuntimeError(f"{self.name} webhook failed: HTTP {res.status_code}")


class SlackChannel(_WebhookChannel):
    name = "slack"

    def build_payload(self, alert: AlertPayload) -> Dict[str, Any]:
        if alert.severity == Severity.critical:
            color = "danger"
        elif alert.severity == Severity.high:
            color = "warning"
        else:
            color = "good"
        return {
            "text": format_alert_message(alert),
            "username": "Security Bot",
            "icon_emoji": ":warning:",
            "attachments": [
                {
                    "color": color,
                    "fields": [
                        {"title": "Alert Type", "value": alert.type, "short": True},
                        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                    ],
                }
            ],
        }


class DiscordChannel(_WebhookChannel):
    name = "discord"

    def build_payload(self, alert: AlertPayload) -> Dict[str, Any]:
        if alert.severity == Severity.critical:
            color = 0xFF0000
        elif alert.severity == Severity.high:
            color = 0xFF8800
        else:
            color = 0x00FF00
        message = format_alert_message(alert)
        return {
            "content": message,
            "username": "Security Bot",
            "embeds": [
                {
                    "title": f"Security Alert: {alert.type}",
                    "description": message,
                    "color": color,
                    "timestamp": alert.timestamp.isoformat(),
                }
            ],
        }


QueueItem = Union[AlertPayload, SuspiciousLoginNotice]


class NotificationDispatcher:
    """
    Fans fired alerts out to every enabled channel, isolating failure per channel.

    Producers call ``submit``/``submit_notice`` which only enqueue; a small worker
    pool drains the bounded queue. Each channel send is bounded by a timeout and
    never retried.
    """

    def __init__(
        self,
        config: AlertingConfig,
        metrics: MetricsRegistry,
        security_log: SecurityLogWriter,
        mailer: Optional[Mailer] = None,
        users: Optional[UserDirectory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        channels: Optional[List[NotificationChannel]] = None,
    ):
        self._config = config
        self._metrics = metrics
        self._security_log = security_log
        self._mailer = mailer
        self._users = users
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = float(config.notify_timeout_sec)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=int(config.notify_queue_size))
        self._workers: List[asyncio.Task] = []
        self.dropped = 0

        if channels is None:
            channels = [
                LogChannel(),
                MetricsChannel(metrics),
                EmailChannel(mailer, config.admin_emails),
                SlackChannel(config.slack_webhook_url, self._get_http_client),
                DiscordChannel(config.discord_webhook_url, self._get_http_client),
            ]
        self.channels = channels

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for webhook delivery."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def channel_status(self) -> Dict[str, bool]:
        return {c.name: bool(c.enabled) for c in self.channels}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _deliver(self, channel: NotificationChannel, alert: AlertPayload) -> ChannelResult:
        try:
            await asyncio.wait_for(channel.send(alert), timeout=self._timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self._timeout:.1f}s"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        else:
            return ChannelResult(channel=channel.name, success=True)

        logger.error(
            "Alert notification failed channel=%s alertKey=%s type=%s error=%s",
            channel.name,
            alert.rule_key,
            alert.type,
            error,
        )
        self._metrics.inc(NOTIFICATION_FAILURES_TOTAL, {"channel": channel.name, "alert_type": alert.type})
        return ChannelResult(channel=channel.name, success=False, error=error)

    # PUBLIC_INTERFACE
    async def dispatch(self, alert: AlertPayload) -> Dict[str, ChannelResult]:
        """Deliver ``alert`` to every channel concurrently; returns one result per channel, never raises."""
        results: Dict[str, ChannelResult] = {}
        active = []
        for channel in self.channels:
            if channel.enabled:
                active.append(channel)
            else:
                results[channel.name] = ChannelResult(channel=channel.name, success=False, skipped=True)

        delivered = await asyncio.gather(*(self._deliver(c, alert) for c in active))
        for r in delivered:
            results[r.channel] = r

        ok = [r.channel for r in delivered if r.success]
        logger.info("Alert notifications sent alertKey=%s channels=%s", alert.rule_key, ok)
        return results

    # PUBLIC_INTERFACE
    async def notify_suspicious_login(self, notice: SuspiciousLoginNotice) -> bool:
        """Mail the account owner, only if the email resolves to a real account. Returns True when sent."""
        try:
            user = await self._users.find_by_email(notice.email) if self._users else None
            if user is None:
                logger.debug("Suspicious login notice skipped, no account for email=%s", notice.email)
                return False
            if self._mailer is None:
                logger.warning("Suspicious login notice skipped, no mailer configured email=%s", notice.email)
                return False
            await asyncio.wait_for(
                self._mailer.send_suspicious_login_notification(notice.email, user.name or "User", notice.info),
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.exception("Failed notifying suspicious activity email=%s", notice.email)
            self._security_log.write(
                {
                    "event": "notification_error",
                    "email": notice.email,
                    "error": str(exc) or exc.__class__.__name__,
                    "severity": "error",
                }
            )
            return False

        self._security_log.write(
            {
                "event": "suspicious_activity_notification_sent",
                "email": notice.email,
                "activityInfo": notice.info,
                "severity": "info",
            }
        )
        return True

    def _enqueue(self, item: QueueItem) -> bool:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full (size=%s); dropping %s", self._queue.maxsize, type(item).__name__)
            return False
        return True

    # PUBLIC_INTERFACE
    def submit(self, alert: AlertPayload) -> bool:
        """Queue an alert for delivery without waiting on it."""
        return self._enqueue(alert)

    # PUBLIC_INTERFACE
    def submit_notice(self, notice: SuspiciousLoginNotice) -> bool:
        """Queue a suspicious-login notice for delivery without waiting on it."""
        return self._enqueue(notice)

    async def _handle(self, item: QueueItem) -> None:
        if isinstance(item, SuspiciousLoginNotice):
            await self.notify_suspicious_login(item)
        else:
            await self.dispatch(item)

    async def _worker(self, idx: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handle(item)
            except Exception:
                logger.exception("Notification worker %s failed handling %s", idx, type(item).__name__)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"notify-worker-{i}")
            for i in range(max(1, int(self._config.notify_workers)))
        ]
        logger.info("Notification dispatcher started (workers=%s, queue=%s)", len(self._workers), self._queue.maxsize)

    async def drain(self) -> None:
        """Wait until every queued item has been handled (workers must be running)."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Notification queue not drained before shutdown pending=%s", self._queue.qsize())
            for t in self._workers:
                t.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Notification dispatcher stopped")
