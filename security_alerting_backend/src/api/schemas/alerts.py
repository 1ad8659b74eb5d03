from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.api.schemas.common import Severity

TestAlertType = Literal["rate_limiting", "performance", "errors"]


class AlertStatsResponse(BaseModel):
    """Envelope for the in-memory alerting statistics."""

    success: bool = Field(True, description="Whether the request succeeded.")
    data: Dict[str, Any] = Field(..., description="Event counts, cooldowns, actor windows and dispatcher status.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class RuleConfigOut(BaseModel):
    """One rule of the alert catalogue as currently configured."""

    name: str = Field(..., description="Rule name; also the alert type it fires.")
    category: str = Field(..., description="Event category the rule is evaluated on.")
    threshold: int = Field(..., ge=1, description="Count that must be reached inside the window.")
    window_sec: int = Field(..., description="Trailing window (seconds).", alias="windowSec")
    severity: Severity = Field(..., description="Severity of the fired alert.")
    cooldown_sec: int = Field(..., description="Minimum seconds between two alerts for one rule key.", alias="cooldownSec")
    duration_threshold_ms: Optional[int] = Field(
        default=None,
        description="Request duration (ms) above which a request counts as slow (slow endpoint rule only).",
        alias="durationThresholdMs",
    )


class ActorPatternOut(BaseModel):
    """Threshold and window of one per-actor pattern."""

    threshold: int = Field(..., ge=1, description="Events per actor key that trigger the pattern.")
    window_sec: int = Field(..., description="Sliding window (seconds).", alias="windowSec")


class AlertConfigData(BaseModel):
    environment: str = Field(..., description="Deployment environment name.")
    rules: List[RuleConfigOut] = Field(..., description="Rule catalogue in evaluation order.")
    actor_patterns: Dict[str, ActorPatternOut] = Field(
        ..., description="Per-actor pattern settings keyed by pattern name.", alias="actorPatterns"
    )
    notifications: Dict[str, bool] = Field(..., description="Which notification channels are enabled.")


class AlertConfigResponse(BaseModel):
    """Envelope for the active alerting configuration (no secrets)."""

    success: bool = Field(True, description="Whether the request succeeded.")
    data: AlertConfigData = Field(..., description="Active configuration.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class TestAlertRequest(BaseModel):
    """Request model for injecting a synthetic burst of events."""

    alert_type: str = Field(
        ...,
        description="Which burst to inject: rate_limiting, performance or errors.",
        alias="alertType",
    )


class TestAlertResponse(BaseModel):
    success: bool = Field(True, description="Whether the burst was injected.")
    message: str = Field(..., description="Human-readable outcome.")
    alert_type: TestAlertType = Field(..., description="The injected burst type.", alias="alertType")
    events_injected: int = Field(..., ge=0, description="Number of synthetic events recorded.", alias="eventsInjected")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class AlertHealthResponse(BaseModel):
    """Health of the alerting engine itself."""

    success: bool = Field(True, description="Whether the request succeeded.")
    status: str = Field(..., description="'healthy' or 'degraded'.")
    data: Dict[str, Any] = Field(..., description="Event totals, channel flags and dispatcher state.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class SecurityStatsResponse(BaseModel):
    """Aggregated security-log statistics over a trailing window of hours."""

    success: bool = Field(True, description="Whether the request succeeded.")
    data: Dict[str, Any] = Field(..., description="Totals, failed logins, suspicious activities and top IPs.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")
