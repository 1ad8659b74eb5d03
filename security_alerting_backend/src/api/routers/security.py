from __future__ import annotations

from fastapi import APIRouter, Query, Request

from src.api.schemas.alerts import SecurityStatsResponse
from src.api.schemas.common import utc_now
from src.api.state import get_state

router = APIRouter(prefix="/api/security", tags=["Security"])


@router.get(
    "/stats",
    response_model=SecurityStatsResponse,
    summary="Security log statistics",
    description="Aggregates the security audit log over the last N hours.",
    operation_id="get_security_stats",
)
def get_security_stats(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 30, description="Trailing window in hours."),
) -> SecurityStatsResponse:
    """Return security-log totals and top IPs."""
    state = get_state(request.app)
    return SecurityStatsResponse(success=True, data=state.security_logger.get_security_stats(hours), timestamp=utc_now())
