from __future__ import annotations

import json
from datetime import timedelta

import pytest

from src.api.schemas.common import utc_now
from src.api.services.metrics import RATE_LIMIT_BLOCKS_TOTAL, RATE_LIMIT_RESET_TIME_SECONDS
from src.api.services.security_log import SecurityLogWriter
from src.api.services.security_logger import SecurityLogger, limiter_type_for, location_from_ip


@pytest.fixture
def security_logger(security_log, detector, metrics, dispatcher) -> SecurityLogger:
    return SecurityLogger(security_log, detector, metrics, dispatcher)


def _events(writer: SecurityLogWriter) -> list[str]:
    return [e["event"] for e in writer.read_entries()]


def test_writer_appends_json_lines_with_timestamp(security_log, log_path):
    security_log.write({"event": "login_attempt", "email": "a@b.c", "severity": "info"})
    security_log.write({"event": "rate_limit_block", "ip": "1.1.1.1", "severity": "warning"})
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event"] == "login_attempt"
    assert first["severity"] == "info"
    assert "timestamp" in first


def test_writer_falls_back_to_logger_when_path_is_unwritable(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    writer = SecurityLogWriter(blocker / "security.log")
    record = writer.write({"event": "login_attempt", "severity": "info"})
    assert record["event"] == "login_attempt"
    assert "[SECURITY LOG]" in caplog.text


def test_read_entries_skips_corrupt_lines(security_log, log_path):
    security_log.write({"event": "a"})
    with log_path.open("a", encoding="utf-8") as fh:
        fh.write("{not json\n")
    security_log.write({"event": "b"})
    assert _events(security_log) == ["a", "b"]


def test_clean_old_entries_keeps_recent_lines(security_log, log_path):
    old = (utc_now() - timedelta(days=40)).isoformat()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text(json.dumps({"timestamp": old, "event": "old"}) + "\n", encoding="utf-8")
    security_log.write({"event": "new"})
    assert security_log.clean_old_entries(30) == 1
    assert _events(security_log) == ["new"]


def test_failed_logins_trigger_suspicious_activity_and_notice(security_logger, security_log, dispatcher):
    attempt = {"email": "ana@example.com", "success": False, "ip": "192.168.0.7", "userAgent": "UA", "reason": "bad"}
    hits = [security_logger.log_login_attempt(attempt) for _ in range(5)]
    assert hits[-1] is not None

    events = _events(security_log)
    assert events.count("login_attempt") == 5
    assert events[-1] == "suspicious_activity_detected"
    suspicious = security_log.read_entries()[-1]
    assert suspicious["pattern"] == "repeated_failed_logins"
    assert suspicious["attemptCount"] == 5
    assert suspicious["timeWindow"] == 15 * 60 * 1000

    assert len(dispatcher.notices) == 1
    notice = dispatcher.notices[0]
    assert notice.email == "ana@example.com"
    assert notice.info["location"] == "Local network"


def test_successful_login_is_not_tracked(security_logger, security_log, detector):
    security_logger.log_login_attempt({"email": "a@b.c", "success": True, "ip": "1.1.1.1"})
    assert security_log.read_entries()[0]["severity"] == "info"
    assert detector.tracked()["failedLogins"] == 0


def test_rate_limit_block_records_metrics_and_pattern(security_logger, security_log, metrics):
    block = {"endpoint": "/login", "ip": "8.8.4.4", "userAgent": "UA", "limit": 5, "windowMs": 900000}
    for _ in range(10):
        security_logger.log_rate_limit_block(block)

    assert metrics.counter_value(
        RATE_LIMIT_BLOCKS_TOTAL, {"limiter_type": "login", "endpoint": "/login", "user_id": "anonymous"}
    ) == 10
    hist = metrics.snapshot()["histograms"][RATE_LIMIT_RESET_TIME_SECONDS][0]
    assert hist["count"] == 10
    assert hist["buckets"]["900.0"] == 10
    assert hist["buckets"]["300.0"] == 0

    last = security_log.read_entries()[-1]
    assert last["event"] == "suspicious_activity_detected"
    assert last["pattern"] == "excessive_rate_limiting"
    assert last["severity"] == "high"


def test_token_is_truncated(security_logger, security_log):
    security_logger.log_suspicious_token_use({"token": "abcdefghijklmnopqrstuvwxyz", "ip": "1.1.1.1", "reason": "expired"})
    assert security_log.read_entries()[0]["token"] == "abcdefghij..."


def test_security_stats_aggregate_log(security_logger):
    security_logger.log_login_attempt({"email": "a@b.c", "success": True, "ip": "1.1.1.1"})
    security_logger.log_login_attempt({"email": "a@b.c", "success": False, "ip": "2.2.2.2"})
    security_logger.log_register_attempt({"email": "n@b.c", "success": True, "ip": "2.2.2.2"})
    security_logger.log_rate_limit_block({"endpoint": "/register", "ip": "2.2.2.2"})
    security_logger.log_two_factor_event("two_factor_login_failed", "u1", ip="3.3.3.3", severity="warning")

    stats = security_logger.get_security_stats(24)
    assert stats["totalEvents"] == 5
    assert stats["loginAttempts"] == 2
    assert stats["failedLogins"] == 1
    assert stats["rateLimitBlocks"] == 1
    assert stats["suspiciousActivities"] == 0
    assert stats["topIPs"][0] == {"ip": "2.2.2.2", "count": 3}


@pytest.mark.parametrize(
    "endpoint,expected",
    [
        ("/login", "login"),
        ("/api/auth/register", "register"),
        ("/forgot-password", "password_reset"),
        ("/password-reset", "password_reset"),
        ("/api/2fa/verify", "two_factor"),
        ("/api/tasks", "general"),
        (None, "general"),
    ],
)
def test_limiter_type_for(endpoint, expected):
    assert limiter_type_for(endpoint) == expected


def test_location_from_ip():
    assert location_from_ip("127.0.0.1") == "Local network"
    assert location_from_ip("::1") == "Local network"
    assert location_from_ip("192.168.1.20") == "Local network"
    assert location_from_ip("8.8.8.8") == "Location unavailable"
    assert location_from_ip("garbage") == "Location unavailable"
