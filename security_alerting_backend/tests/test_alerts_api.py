from __future__ import annotations

import threading

import httpx
import pytest

from src.api.config import AlertingConfig
from src.api.state import get_state


@pytest.mark.anyio
async def test_health_endpoints(async_client: httpx.AsyncClient):
    res = await async_client.get("/")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"

    res = await async_client.get("/api/alerts/health-check")
    assert res.status_code == 200
    assert res.json()["message"] == "Alert service is running"


@pytest.mark.anyio
async def test_alert_config_lists_rule_catalogue(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/alerts/config")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    data = body["data"]
    assert [r["name"] for r in data["rules"]] == [
        "excessive_rate_limiting",
        "suspicious_ip",
        "massive_attack",
        "slow_critical_endpoint",
        "high_error_rate",
    ]
    suspicious = data["rules"][1]
    assert suspicious["threshold"] == 5
    assert suspicious["windowSec"] == 600
    assert suspicious["cooldownSec"] == 1800
    assert suspicious["severity"] == "critical"
    assert data["rules"][3]["durationThresholdMs"] == 3000
    assert data["actorPatterns"]["repeated_failed_logins"] == {"threshold": 5, "windowSec": 900}
    assert data["notifications"]["slack"] is False
    assert data["notifications"]["log"] is True


@pytest.mark.anyio
async def test_inject_rate_limiting_burst_fires_alert(app, async_client: httpx.AsyncClient):
    res = await async_client.post("/api/alerts/test", json={"alertType": "rate_limiting"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["alertType"] == "rate_limiting"
    assert body["eventsInjected"] == 12

    res = await async_client.get("/api/alerts/stats")
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["rateLimitBlocks"]["total"] == 12
    assert data["activeCooldowns"] == 1
    assert data["lastAlerts"][0]["key"] == "excessive_rate_limiting"

    # delivery is queued, workers are not running under ASGITransport
    assert get_state(app).dispatcher.pending == 1


@pytest.mark.anyio
async def test_inject_unknown_type_returns_valid_types(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/alerts/test", json={"alertType": "bogus"})
    assert res.status_code == 400
    detail = res.json()["detail"]
    assert detail["validTypes"] == ["rate_limiting", "performance", "errors"]


@pytest.mark.anyio
async def test_inject_is_forbidden_in_production(log_path):
    from src.api.main import create_app

    prod = create_app(AlertingConfig(environment="production", security_log_path=str(log_path)))
    transport = httpx.ASGITransport(app=prod)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        res = await client.post("/api/alerts/test", json={"alertType": "errors"})
    assert res.status_code == 403
    assert get_state(prod).alert_service.get_alert_stats()["performanceIssues"]["total"] == 1


@pytest.mark.anyio
async def test_alert_health_reflects_dispatcher_workers(app, async_client: httpx.AsyncClient):
    res = await async_client.get("/api/alerts/health")
    assert res.status_code == 200
    assert res.json()["status"] == "degraded"
    assert res.json()["data"]["dispatcherRunning"] is False

    dispatcher = get_state(app).dispatcher
    dispatcher.start()
    try:
        res = await async_client.get("/api/alerts/health")
        assert res.json()["status"] == "healthy"
        assert res.json()["data"]["totalRateLimitBlocks"] == 0
    finally:
        await dispatcher.stop()


@pytest.mark.anyio
async def test_security_stats_endpoint(app, async_client: httpx.AsyncClient):
    security_logger = get_state(app).security_logger
    security_logger.log_login_attempt({"email": "a@b.c", "success": False, "ip": "10.0.0.1"})
    security_logger.log_login_attempt({"email": "a@b.c", "success": True, "ip": "10.0.0.1"})

    res = await async_client.get("/api/security/stats", params={"hours": 1})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["loginAttempts"] == 2
    assert data["failedLogins"] == 1
    assert data["timeRangeHours"] == 1

    res = await async_client.get("/api/security/stats", params={"hours": 0})
    assert res.status_code == 422


@pytest.mark.anyio
async def test_test_burst_enqueues_on_event_loop_thread(app, async_client: httpx.AsyncClient, monkeypatch):
    dispatcher = get_state(app).dispatcher
    original_submit = dispatcher.submit
    submit_threads = []

    def recording_submit(alert):
        submit_threads.append(threading.current_thread().name)
        return original_submit(alert)

    monkeypatch.setattr(dispatcher, "submit", recording_submit)
    loop_thread = threading.current_thread().name

    res = await async_client.post("/api/alerts/test", json={"alertType": "rate_limiting"})
    assert res.status_code == 200, res.text
    assert submit_threads == [loop_thread]
