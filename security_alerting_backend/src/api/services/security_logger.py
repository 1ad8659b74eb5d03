from __future__ import annotations

import ipaddress
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from src.api.schemas.common import utc_now
from src.api.services.actor_windows import ActorPatternDetector, ActorPatternHit
from src.api.services.metrics import RATE_LIMIT_BLOCKS_TOTAL, RATE_LIMIT_RESET_TIME_SECONDS, MetricsRegistry
from src.api.services.notifications import NotificationDispatcher, SuspiciousLoginNotice
from src.api.services.security_log import SecurityLogWriter

logger = logging.getLogger(__name__)


def limiter_type_for(endpoint: Optional[str]) -> str:
    """Classify a rate-limited endpoint into its limiter family."""
    ep = endpoint or ""
    if "login" in ep:
        return "login"
    if "register" in ep:
        return "register"
    if "password-reset" in ep or "forgot-password" in ep:
        return "password_reset"
    if "2fa" in ep:
        return "two_factor"
    return "general"


def location_from_ip(ip: Optional[str]) -> str:
    """Approximate location; only local networks are recognised."""
    if not ip:
        return "Location unavailable"
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "Location unavailable"
    if addr.is_loopback or addr.is_private:
        return "Local network"
    return "Location unavailable"


def _top_ips(entries: List[Dict[str, Any]], limit: int = 10) -> List[Dict[str, Any]]:
    counts = Counter(e.get("ip") for e in entries if e.get("ip"))
    return [{"ip": ip, "count": n} for ip, n in counts.most_common(limit)]


class SecurityLogger:
    """
    Security/audit event logging for authentication and rate-limit producers.

    Every call persists one structured line through the SecurityLogWriter; failed
    logins and rate-limit blocks additionally feed the per-actor pattern detector.
    """

    def __init__(
        self,
        writer: SecurityLogWriter,
        detector: ActorPatternDetector,
        metrics: MetricsRegistry,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.writer = writer
        self._detector = detector
        self._metrics = metrics
        self._dispatcher = dispatcher

    # PUBLIC_INTERFACE
    def log_login_attempt(self, attempt: Mapping[str, Any]) -> Optional[ActorPatternHit]:
        """Persist a login attempt; a failed one is checked for the repeated-failure pattern."""
        success = bool(attempt.get("success"))
        email = attempt.get("email")
        ip = attempt.get("ip")
        user_agent = attempt.get("userAgent")
        self.writer.write(
            {
                "event": "login_attempt",
                "email": email,
                "success": success,
                "ip": ip,
                "userAgent": user_agent,
                "reason": attempt.get("reason"),
                "userId": attempt.get("userId"),
                "severity": "info" if success else "warning",
            }
        )
        if success:
            return None
        return self.check_suspicious_login(email, ip, user_agent)

    def check_suspicious_login(self, email: Optional[str], ip: Optional[str], user_agent: Optional[str]) -> Optional[ActorPatternHit]:
        try:
            hit = self._detector.record_failed_login(email, ip, user_agent)
        except Exception:
            logger.exception("Failed-login pattern check failed email=%s ip=%s", email, ip)
            return None
        if hit is None:
            return None

        self.log_suspicious_activity(
            {
                "email": email,
                "ip": ip,
                "userAgent": user_agent,
                "attemptCount": hit.count,
                "timeWindow": int(hit.window_sec * 1000),
                "pattern": hit.pattern,
            }
        )
        if email and self._dispatcher is not None:
            self._dispatcher.submit_notice(
                SuspiciousLoginNotice(
                    email=email,
                    info={
                        "ip": ip,
                        "userAgent": user_agent,
                        "timestamp": utc_now().isoformat(),
                        "pattern": "Multiple failed login attempts",
                        "location": location_from_ip(ip),
                    },
                )
            )
        return hit

    # PUBLIC_INTERFACE
    def log_rate_limit_block(self, block: Mapping[str, Any]) -> Optional[ActorPatternHit]:
        """Persist a rate-limit block, record its metrics and check the per-IP block pattern."""
        endpoint = block.get("endpoint")
        ip = block.get("ip")
        user_id = block.get("userId")
        window_ms = block.get("windowMs")
        self.writer.write(
            {
                "event": "rate_limit_block",
                "endpoint": endpoint,
                "ip": ip,
                "userAgent": block.get("userAgent"),
                "email": block.get("email"),
                "userId": user_id,
                "limit": block.get("limit"),
                "windowMs": window_ms,
                "severity": "warning",
            }
        )

        limiter_type = limiter_type_for(endpoint)
        try:
            self._metrics.inc(
                RATE_LIMIT_BLOCKS_TOTAL,
                {"limiter_type": limiter_type, "endpoint": endpoint or "", "user_id": user_id or "anonymous"},
            )
            if window_ms is not None:
                self._metrics.observe(
                    RATE_LIMIT_RESET_TIME_SECONDS,
                    float(window_ms) / 1000.0,
                    {"limiter_type": limiter_type, "endpoint": endpoint or ""},
                )
        except (TypeError, ValueError):
            logger.exception("Failed recording rate limit metrics endpoint=%s", endpoint)

        return self.check_rate_limit_pattern(ip, endpoint)

    def check_rate_limit_pattern(self, ip: Optional[str], endpoint: Optional[str]) -> Optional[ActorPatternHit]:
        try:
            hit = self._detector.record_rate_limit_block(ip, endpoint)
        except Exception:
            logger.exception("Rate-limit pattern check failed ip=%s", ip)
            return None
        if hit is None:
            return None
        self.log_suspicious_activity(
            {
                "ip": ip,
                "endpoint": endpoint,
                "blockCount": hit.count,
                "timeWindow": int(hit.window_sec * 1000),
                "pattern": hit.pattern,
                "severity": "high",
            }
        )
        return hit

    def log_suspicious_activity(self, activity: Dict[str, Any]) -> None:
        entry = {"event": "suspicious_activity_detected", **activity}
        entry["severity"] = activity.get("severity") or "high"
        self.writer.write(entry)
        logger.warning("Suspicious activity detected pattern=%s ip=%s", activity.get("pattern"), activity.get("ip"))

    def log_register_attempt(self, attempt: Mapping[str, Any]) -> None:
        success = bool(attempt.get("success"))
        self.writer.write(
            {
                "event": "register_attempt",
                "email": attempt.get("email"),
                "success": success,
                "ip": attempt.get("ip"),
                "userAgent": attempt.get("userAgent"),
                "reason": attempt.get("reason"),
                "userId": attempt.get("userId"),
                "severity": "info" if success else "warning",
            }
        )

    def log_password_reset_attempt(self, attempt: Mapping[str, Any]) -> None:
        success = bool(attempt.get("success"))
        self.writer.write(
            {
                "event": "password_reset_attempt",
                "email": attempt.get("email"),
                "success": success,
                "ip": attempt.get("ip"),
                "userAgent": attempt.get("userAgent"),
                "reason": attempt.get("reason"),
                "severity": "info" if success else "warning",
            }
        )

    def log_suspicious_token_use(self, attempt: Mapping[str, Any]) -> None:
        token = attempt.get("token")
        self.writer.write(
            {
                "event": "suspicious_token_use",
                # never persist a full token
                "token": f"{str(token)[:10]}..." if token else "invalid",
                "ip": attempt.get("ip"),
                "userAgent": attempt.get("userAgent"),
                "reason": attempt.get("reason"),
                "userId": attempt.get("userId"),
                "severity": "high",
            }
        )

    def log_two_factor_event(
        self,
        event: str,
        user_id: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
        severity: str = "info",
    ) -> None:
        """Persist a 2FA lifecycle event (e.g. ``two_factor_enabled``, ``two_factor_login_failed``)."""
        entry: Dict[str, Any] = {"event": event, "userId": user_id, "ip": ip, "userAgent": user_agent}
        if error is not None:
            entry["error"] = error
        entry["severity"] = severity
        self.writer.write(entry)

    # PUBLIC_INTERFACE
    def get_security_stats(self, hours: int = 24) -> Dict[str, Any]:
        """Aggregate the persisted security log over the last ``hours`` hours."""
        since = utc_now() - timedelta(hours=max(1, int(hours)))
        entries = self.writer.read_entries(since=since)
        logins = [e for e in entries if e.get("event") == "login_attempt"]
        return {
            "totalEvents": len(entries),
            "loginAttempts": len(logins),
            "failedLogins": sum(1 for e in logins if not e.get("success")),
            "suspiciousActivities": sum(1 for e in entries if e.get("event") == "suspicious_activity_detected"),
            "rateLimitBlocks": sum(1 for e in entries if e.get("event") == "rate_limit_block"),
            "topIPs": _top_ips(entries),
            "timeRangeHours": int(hours),
        }
