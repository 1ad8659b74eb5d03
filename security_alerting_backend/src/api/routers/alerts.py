from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from src.api.schemas.alerts import (
    ActorPatternOut,
    AlertConfigData,
    AlertConfigResponse,
    AlertHealthResponse,
    AlertStatsResponse,
    RuleConfigOut,
    TestAlertRequest,
    TestAlertResponse,
)
from src.api.schemas.common import ErrorResponse, HealthResponse, utc_now
from src.api.services.alert_service import TEST_ALERT_TYPES
from src.api.services.event_store import EventCategory
from src.api.state import get_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.get(
    "/stats",
    response_model=AlertStatsResponse,
    summary="Alerting statistics",
    description="Event counts, active cooldowns, recently fired alert keys, actor windows and dispatcher status.",
    operation_id="get_alert_stats",
)
async def get_alert_stats(request: Request) -> AlertStatsResponse:
    """Return in-memory alerting statistics."""
    state = get_state(request.app)
    return AlertStatsResponse(success=True, data=state.alert_service.get_alert_stats(), timestamp=utc_now())


@router.get(
    "/config",
    response_model=AlertConfigResponse,
    summary="Alerting configuration",
    description="Rule thresholds, actor pattern settings and which notification channels are enabled. No secrets.",
    operation_id="get_alert_config",
)
async def get_alert_config(request: Request) -> AlertConfigResponse:
    """Return the active rule catalogue and channel flags."""
    state = get_state(request.app)
    cfg = state.config
    rules = [
        RuleConfigOut(
            name=r.name,
            category=r.category.value,
            threshold=r.threshold,
            windowSec=r.window_sec,
            severity=r.severity,
            cooldownSec=r.cooldown_sec,
            durationThresholdMs=r.duration_threshold_ms,
        )
        for r in state.alert_service.evaluator.rules
    ]
    patterns = {
        "repeated_failed_logins": ActorPatternOut(
            threshold=cfg.failed_login_pattern.threshold, windowSec=cfg.failed_login_pattern.window_sec
        ),
        "excessive_rate_limiting": ActorPatternOut(
            threshold=cfg.rate_limit_pattern.threshold, windowSec=cfg.rate_limit_pattern.window_sec
        ),
    }
    data = AlertConfigData(
        environment=cfg.environment,
        rules=rules,
        actorPatterns=patterns,
        notifications=state.dispatcher.channel_status(),
    )
    return AlertConfigResponse(success=True, data=data, timestamp=utc_now())


@router.post(
    "/test",
    response_model=TestAlertResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    summary="Inject a test alert burst",
    description=(
        "Feeds a synthetic burst of events through the normal pipeline so the matching rule fires "
        "(subject to cooldowns). Disabled in production."
    ),
    operation_id="inject_test_alert",
)
async def inject_test_alert(request: Request, payload: TestAlertRequest) -> TestAlertResponse:
    """Inject synthetic events for rate_limiting, performance or errors."""
    state = get_state(request.app)
    if state.config.is_production:
        raise HTTPException(status_code=403, detail="Test alerts are not allowed in production")

    alert_type = (payload.alert_type or "").strip()
    if alert_type not in TEST_ALERT_TYPES:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid alert type", "validTypes": list(TEST_ALERT_TYPES)},
        )

    injected = state.alert_service.inject_test_events(alert_type)
    logger.info("Test alert burst injected type=%s events=%s", alert_type, injected)
    return TestAlertResponse(
        success=True,
        message=f"Test alert of type {alert_type} injected",
        alertType=alert_type,
        eventsInjected=injected,
        timestamp=utc_now(),
    )


@router.get(
    "/health",
    response_model=AlertHealthResponse,
    summary="Alerting engine health",
    description="Event totals, channel configuration and whether the notification workers are running.",
    operation_id="get_alert_health",
)
async def get_alert_health(request: Request) -> AlertHealthResponse:
    """Report the alerting engine's own health."""
    state = get_state(request.app)
    dispatcher = state.dispatcher
    running = dispatcher.running
    return AlertHealthResponse(
        success=True,
        status="healthy" if running else "degraded",
        data={
            "totalRateLimitBlocks": state.store.count(EventCategory.rate_limit_block),
            "totalPerformanceIssues": state.store.count(EventCategory.performance_issue),
            "activeCooldowns": len(state.gate.active()),
            "notifications": dispatcher.channel_status(),
            "dispatcherRunning": running,
            "pendingNotifications": dispatcher.pending,
            "droppedNotifications": dispatcher.dropped,
        },
        timestamp=utc_now(),
    )


@router.get(
    "/health-check",
    response_model=HealthResponse,
    summary="Alerting liveness",
    description="Unauthenticated liveness check for the alerting service.",
    operation_id="alerts_liveness",
)
def alerts_liveness() -> HealthResponse:
    """Return alerting liveness status."""
    return HealthResponse(status="ok", message="Alert service is running", timestamp=utc_now())
