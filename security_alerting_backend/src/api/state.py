from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI

from src.api.config import AlertingConfig
from src.api.services.actor_windows import ActorPatternDetector
from src.api.services.alert_service import AlertService
from src.api.services.clock import Clock, SystemClock
from src.api.services.cooldown import CooldownGate
from src.api.services.event_store import EventCategory, EventStore
from src.api.services.mailer import LoggingMailer, Mailer, SmtpMailer
from src.api.services.metrics import MetricsRegistry, build_metrics_registry
from src.api.services.notifications import NotificationDispatcher
from src.api.services.rules import RuleEvaluator, build_rule_catalogue
from src.api.services.security_log import SecurityLogWriter
from src.api.services.security_logger import SecurityLogger
from src.api.services.users import InMemoryUserDirectory, UserDirectory


@dataclass
class AppState:
    """Typed app.state container for shared services."""

    config: AlertingConfig
    clock: Clock
    metrics: MetricsRegistry
    security_log: SecurityLogWriter
    store: EventStore
    gate: CooldownGate
    detector: ActorPatternDetector
    dispatcher: NotificationDispatcher
    alert_service: AlertService
    security_logger: SecurityLogger
    housekeeping_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles


def _default_mailer(config: AlertingConfig) -> Optional[Mailer]:
    if config.smtp is not None:
        return SmtpMailer(config.smtp)
    if config.is_development:
        return LoggingMailer()
    return None


# PUBLIC_INTERFACE
def build_state(
    config: AlertingConfig,
    clock: Optional[Clock] = None,
    users: Optional[UserDirectory] = None,
    mailer: Optional[Mailer] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AppState:
    """Wire the alerting services together for one application instance."""
    clock = clock or SystemClock()
    metrics = build_metrics_registry()
    security_log = SecurityLogWriter(config.security_log_path, echo=config.is_development)
    store = EventStore(
        retention_sec={
            EventCategory.rate_limit_block: config.rate_limit_retention_sec,
            EventCategory.performance_issue: config.performance_retention_sec,
            EventCategory.login_attempt: config.login_retention_sec,
        },
        clock=clock,
    )
    gate = CooldownGate(clock)
    detector = ActorPatternDetector(config.failed_login_pattern, config.rate_limit_pattern, clock)
    dispatcher = NotificationDispatcher(
        config,
        metrics,
        security_log,
        mailer=mailer if mailer is not None else _default_mailer(config),
        users=users if users is not None else InMemoryUserDirectory(),
        http_client=http_client,
    )
    alert_service = AlertService(
        config=config,
        store=store,
        evaluator=RuleEvaluator(store, build_rule_catalogue(config)),
        gate=gate,
        dispatcher=dispatcher,
        security_log=security_log,
        metrics=metrics,
        detector=detector,
        clock=clock,
    )
    security_logger = SecurityLogger(security_log, detector, metrics, dispatcher)
    return AppState(
        config=config,
        clock=clock,
        metrics=metrics,
        security_log=security_log,
        store=store,
        gate=gate,
        detector=detector,
        dispatcher=dispatcher,
        alert_service=alert_service,
        security_logger=security_logger,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: AlertingConfig, **overrides) -> AppState:
    """Initialize app.state with the wired alerting services."""
    state = build_state(config, **overrides)
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
