from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest

from src.api.config import AlertingConfig
from src.api.services.actor_windows import ActorPatternDetector
from src.api.services.alert_service import AlertService
from src.api.services.cooldown import CooldownGate
from src.api.services.event_store import EventStore
from src.api.services.metrics import MetricsRegistry, build_metrics_registry
from src.api.services.notifications import AlertPayload, SuspiciousLoginNotice
from src.api.services.rules import RuleEvaluator, build_rule_catalogue
from src.api.services.security_log import SecurityLogWriter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = float(start)

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += float(seconds)


class RecordingDispatcher:
    """Stands in for NotificationDispatcher where only the submitted work matters."""

    def __init__(self) -> None:
        self.alerts: List[AlertPayload] = []
        self.notices: List[SuspiciousLoginNotice] = []
        self.running = False
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self.alerts) + len(self.notices)

    def channel_status(self) -> Dict[str, bool]:
        return {"log": True, "metrics": True, "email": False, "slack": False, "discord": False}

    def submit(self, alert: AlertPayload) -> bool:
        self.alerts.append(alert)
        return True

    def submit_notice(self, notice: SuspiciousLoginNotice) -> bool:
        self.notices.append(notice)
        return True

    def fired_types(self) -> List[str]:
        return [a.type for a in self.alerts]


class RecordingMailer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.alerts: List[Dict[str, Any]] = []
        self.notices: List[Dict[str, Any]] = []

    async def send_security_alert(self, to: str, subject: str, text: str, alert: AlertPayload) -> None:
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.alerts.append({"to": to, "subject": subject, "text": text, "type": alert.type})

    async def send_suspicious_login_notification(self, to: str, user_name: str, info: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.notices.append({"to": to, "user_name": user_name, "info": info})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "logs" / "security.log"


@pytest.fixture
def config(log_path: Path) -> AlertingConfig:
    """Default rule catalogue, no external channels, audit log in a temp dir."""
    return AlertingConfig(environment="test", security_log_path=str(log_path))


@pytest.fixture
def metrics() -> MetricsRegistry:
    return build_metrics_registry()


@pytest.fixture
def security_log(log_path: Path) -> SecurityLogWriter:
    return SecurityLogWriter(log_path)


@pytest.fixture
def store(clock: FakeClock) -> EventStore:
    return EventStore(clock=clock)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def detector(config: AlertingConfig, clock: FakeClock) -> ActorPatternDetector:
    return ActorPatternDetector(config.failed_login_pattern, config.rate_limit_pattern, clock)


@pytest.fixture
def alert_service(
    config: AlertingConfig,
    store: EventStore,
    clock: FakeClock,
    dispatcher: RecordingDispatcher,
    security_log: SecurityLogWriter,
    metrics: MetricsRegistry,
    detector: ActorPatternDetector,
) -> AlertService:
    return AlertService(
        config=config,
        store=store,
        evaluator=RuleEvaluator(store, build_rule_catalogue(config)),
        gate=CooldownGate(clock),
        dispatcher=dispatcher,  # type: ignore[arg-type]
        security_log=security_log,
        metrics=metrics,
        detector=detector,
        clock=clock,
    )


@pytest.fixture
def app(config: AlertingConfig, clock: FakeClock):
    """
    Fresh FastAPI app per test, wired with the fake clock.

    httpx's ASGITransport does not run lifespan events, so notification workers
    are not started unless a test starts them.
    """
    from src.api.main import create_app

    return create_app(config, clock=clock)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
