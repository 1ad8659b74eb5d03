"""Alerting engine services (in-memory, single process).

- event_store.py / rules.py / cooldown.py: record -> evaluate -> gate
- actor_windows.py: per-actor abuse patterns (failed logins, rate-limit blocks)
- notifications.py: queued fan-out to log, metrics, email, Slack and Discord
- security_log.py / security_logger.py: append-only security audit log
- alert_service.py: producer entry point and housekeeping loop
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
