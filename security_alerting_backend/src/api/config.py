from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from src.api.schemas.common import Severity

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Parse an int env var with a default."""
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with a default."""
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool = False) -> bool:
    """Parse a bool env var (true/false/1/0/yes/no/on/off)."""
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    val = raw.strip().lower()
    if val in ("1", "true", "yes", "y", "on"):
        return True
    if val in ("0", "false", "no", "n", "off"):
        return False
    return bool(default)


def _env_list(name: str) -> List[str]:
    """Parse a comma-separated env var into a de-duplicated list."""
    raw = os.getenv(name) or ""
    seen = set()
    out: List[str] = []
    for part in raw.split(","):
        p = part.strip()
        if p and p not in seen:
            seen.add(p)
            out.append(p)
    return out


def _env_severity(name: str, default: Severity) -> Severity:
    raw = (os.getenv(name) or "").strip().lower()
    try:
        return Severity(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring invalid severity %s=%r (using %s)", name, raw, default.value)
        return default


def _clamp_int(v: int, lo: int, hi: int) -> int:
    """Clamp integer to [lo, hi]."""
    return max(lo, min(hi, int(v)))


@dataclass(frozen=True)
class RuleSettings:
    """Threshold, window and cooldown of one alert rule."""

    threshold: int
    window_sec: int
    severity: Severity
    cooldown_sec: int


@dataclass(frozen=True)
class ActorSettings:
    """Threshold and window of one actor pattern."""

    threshold: int
    window_sec: int


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    timeout_sec: float = 10.0
    from_address: str = "security@localhost"
    from_name: str = "Security Bot"


@dataclass(frozen=True)
class AlertingConfig:
    """Runtime configuration loaded from env."""

    environment: str = "development"

    # Event store retention horizons.
    rate_limit_retention_sec: int = 24 * 3600
    performance_retention_sec: int = 3600
    login_retention_sec: int = 3600

    # Rule catalogue tuning (windows/cooldowns in seconds).
    excessive_rate_limiting: RuleSettings = RuleSettings(10, 5 * 60, Severity.high, 15 * 60)
    suspicious_ip: RuleSettings = RuleSettings(5, 10 * 60, Severity.critical, 30 * 60)
    massive_attack: RuleSettings = RuleSettings(20, 5 * 60, Severity.critical, 60 * 60)
    slow_critical_endpoint: RuleSettings = RuleSettings(3, 5 * 60, Severity.high, 10 * 60)
    slow_endpoint_duration_ms: int = 3000
    high_error_rate: RuleSettings = RuleSettings(10, 5 * 60, Severity.high, 15 * 60)

    # Actor pattern detector.
    failed_login_pattern: ActorSettings = ActorSettings(5, 15 * 60)
    rate_limit_pattern: ActorSettings = ActorSettings(10, 3600)

    # Notification channels (absent config => channel disabled).
    admin_emails: List[str] = field(default_factory=list)
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    smtp: Optional[SmtpSettings] = None

    # Dispatcher tuning.
    notify_timeout_sec: float = 5.0
    notify_queue_size: int = 1000
    notify_workers: int = 2

    # Security log writer.
    security_log_path: str = "logs/security.log"
    security_log_retention_days: int = 30

    # Background housekeeping cadence.
    housekeeping_interval_sec: int = 60

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def email_enabled(self) -> bool:
        return bool(self.admin_emails) and self.smtp is not None


def _rule_from_env(prefix: str, default: RuleSettings) -> RuleSettings:
    threshold = _env_int(f"{prefix}_THRESHOLD", default.threshold)
    window = _env_int(f"{prefix}_WINDOW_SEC", default.window_sec)
    cooldown = _env_int(f"{prefix}_COOLDOWN_SEC", default.cooldown_sec)
    return RuleSettings(
        threshold=_clamp_int(threshold, 1, 1000),
        window_sec=_clamp_int(window, 60, 24 * 3600),
        severity=_env_severity(f"{prefix}_SEVERITY", default.severity),
        cooldown_sec=_clamp_int(cooldown, 0, 24 * 3600),
    )


def _actor_from_env(prefix: str, default: ActorSettings) -> ActorSettings:
    return ActorSettings(
        threshold=_clamp_int(_env_int(f"{prefix}_THRESHOLD", default.threshold), 1, 1000),
        window_sec=_clamp_int(_env_int(f"{prefix}_WINDOW_SEC", default.window_sec), 60, 24 * 3600),
    )


def _smtp_from_env() -> Optional[SmtpSettings]:
    host = (os.getenv("SMTP_HOST") or "").strip()
    if not host:
        return None
    return SmtpSettings(
        host=host,
        port=_clamp_int(_env_int("SMTP_PORT", 587), 1, 65535),
        username=os.getenv("SMTP_USERNAME") or None,
        password=os.getenv("SMTP_PASSWORD") or None,
        use_tls=_env_bool("SMTP_USE_TLS", True),
        timeout_sec=max(1.0, _env_float("SMTP_TIMEOUT_SEC", 10.0)),
        from_address=os.getenv("MAIL_FROM_ADDRESS") or "security@localhost",
        from_name=os.getenv("MAIL_FROM_NAME") or "Security Bot",
    )


# PUBLIC_INTERFACE
def load_config() -> AlertingConfig:
    """Load AlertingConfig from env vars, falling back to the built-in defaults."""
    defaults = AlertingConfig()

    environment = (os.getenv("APP_ENV") or os.getenv("ENVIRONMENT") or "development").strip().lower()

    slack = (os.getenv("SLACK_WEBHOOK_URL") or "").strip() or None
    discord = (os.getenv("DISCORD_WEBHOOK_URL") or "").strip() or None
    admin_emails = _env_list("ADMIN_EMAILS")
    smtp = _smtp_from_env()

    log_path = os.getenv("SECURITY_LOG_PATH") or str(Path("logs") / "security.log")

    cfg = AlertingConfig(
        environment=environment,
        rate_limit_retention_sec=_clamp_int(
            _env_int("RATE_LIMIT_RETENTION_SEC", defaults.rate_limit_retention_sec), 60, 7 * 24 * 3600
        ),
        performance_retention_sec=_clamp_int(
            _env_int("PERFORMANCE_RETENTION_SEC", defaults.performance_retention_sec), 60, 7 * 24 * 3600
        ),
        login_retention_sec=_clamp_int(
            _env_int("LOGIN_RETENTION_SEC", defaults.login_retention_sec), 60, 7 * 24 * 3600
        ),
        excessive_rate_limiting=_rule_from_env("ALERT_EXCESSIVE_BLOCKS", defaults.excessive_rate_limiting),
        suspicious_ip=_rule_from_env("ALERT_SUSPICIOUS_IP", defaults.suspicious_ip),
        massive_attack=_rule_from_env("ALERT_MASSIVE_ATTACK", defaults.massive_attack),
        slow_critical_endpoint=_rule_from_env("ALERT_SLOW_ENDPOINT", defaults.slow_critical_endpoint),
        slow_endpoint_duration_ms=_clamp_int(
            _env_int("ALERT_SLOW_ENDPOINT_DURATION_MS", defaults.slow_endpoint_duration_ms), 1, 600000
        ),
        high_error_rate=_rule_from_env("ALERT_HIGH_ERROR_RATE", defaults.high_error_rate),
        failed_login_pattern=_actor_from_env("PATTERN_FAILED_LOGIN", defaults.failed_login_pattern),
        rate_limit_pattern=_actor_from_env("PATTERN_RATE_LIMIT", defaults.rate_limit_pattern),
        admin_emails=admin_emails,
        slack_webhook_url=slack,
        discord_webhook_url=discord,
        smtp=smtp,
        notify_timeout_sec=min(60.0, max(0.5, _env_float("NOTIFY_TIMEOUT_SEC", defaults.notify_timeout_sec))),
        notify_queue_size=_clamp_int(_env_int("NOTIFY_QUEUE_SIZE", defaults.notify_queue_size), 1, 100000),
        notify_workers=_clamp_int(_env_int("NOTIFY_WORKERS", defaults.notify_workers), 1, 32),
        security_log_path=log_path,
        security_log_retention_days=max(1, _env_int("SECURITY_LOG_RETENTION_DAYS", 30)),
        housekeeping_interval_sec=_clamp_int(
            _env_int("ALERT_HOUSEKEEPING_INTERVAL_SEC", defaults.housekeeping_interval_sec), 1, 3600
        ),
    )

    logger.info(
        "Alerting config loaded env=%s email=%s slack=%s discord=%s log=%s",
        cfg.environment,
        cfg.email_enabled,
        bool(cfg.slack_webhook_url),
        bool(cfg.discord_webhook_url),
        cfg.security_log_path,
    )
    return cfg
