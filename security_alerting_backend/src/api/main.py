from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.config import AlertingConfig, load_config
from src.api.middleware.performance import PerformanceMiddleware
from src.api.routers import alerts, health, security
from src.api.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "Alerts", "description": "Security and performance alerting: stats, configuration, test bursts."},
    {"name": "Security", "description": "Security audit log statistics."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> str | None:
    return os.getenv("FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())

    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


# PUBLIC_INTERFACE
def create_app(config: Optional[AlertingConfig] = None, **state_overrides) -> FastAPI:
    """Build the FastAPI app with its own set of alerting services."""
    app = FastAPI(
        title="Security Alerting API",
        description=(
            "Anomaly detection and alerting for the HR/CRM backend. Rate-limit blocks and slow or failing "
            "requests are evaluated against threshold rules; fired alerts fan out to log, metrics, email, "
            "Slack and Discord. Security events are persisted to an append-only audit log."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )

    init_state(app, config or load_config(), **state_overrides)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: start notification workers and the housekeeping loop."""
        state = get_state(app)
        state.dispatcher.start()

        app.state._housekeeping_shutdown = asyncio.Event()
        state.housekeeping_task = asyncio.create_task(
            state.alert_service.housekeeping_loop(app.state._housekeeping_shutdown)
        )

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop housekeeping, then drain and stop the notification workers."""
        state = get_state(app)

        housekeeping_shutdown = getattr(app.state, "_housekeeping_shutdown", None)
        if housekeeping_shutdown is not None:
            housekeeping_shutdown.set()
        housekeeping_task = state.housekeeping_task
        if housekeeping_task is not None:
            try:
                await asyncio.wait_for(housekeeping_task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping housekeeping task")

        try:
            await state.dispatcher.stop(timeout=5.0)
        except Exception:
            logger.exception("Error stopping notification dispatcher")

    app.add_middleware(PerformanceMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(security.router)
    return app


app = create_app()
