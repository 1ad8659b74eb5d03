from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi import Depends, HTTPException

from src.api.middleware.rate_limit import RateLimiter
from src.api.services.event_store import EventCategory
from src.api.state import get_state


@pytest.mark.anyio
async def test_failing_request_is_reported_as_performance_issue(app, async_client: httpx.AsyncClient):
    @app.get("/api/dashboard/tasks-metrics")
    def tasks_metrics():
        raise HTTPException(status_code=503, detail="down")

    res = await async_client.get("/api/dashboard/tasks-metrics")
    assert res.status_code == 503

    events = get_state(app).store.events(EventCategory.performance_issue)
    assert len(events) == 1
    assert events[0].get("endpoint") == "/api/dashboard/tasks-metrics"
    assert events[0].get("statusCode") == 503
    assert events[0].get("critical") is True
    assert events[0].get("method") == "GET"


@pytest.mark.anyio
async def test_fast_successful_request_is_not_reported(app, async_client: httpx.AsyncClient):
    res = await async_client.get("/")
    assert res.status_code == 200
    assert get_state(app).store.count(EventCategory.performance_issue) == 0


@pytest.mark.anyio
async def test_slow_request_over_endpoint_threshold_is_reported(app, async_client: httpx.AsyncClient):
    @app.get("/api/health")
    async def slow_health():
        await asyncio.sleep(0.25)
        return {"ok": True}

    res = await async_client.get("/api/health")
    assert res.status_code == 200

    events = get_state(app).store.events(EventCategory.performance_issue)
    assert len(events) == 1
    assert events[0].get("duration") > 200
    assert events[0].get("critical") is False


@pytest.mark.anyio
async def test_rate_limiter_blocks_and_reports(app, async_client: httpx.AsyncClient, clock):
    limiter = RateLimiter("/login", limit=2, window_sec=900, clock=clock)

    @app.post("/api/auth/login", dependencies=[Depends(limiter)])
    def login():
        return {"ok": True}

    assert (await async_client.post("/api/auth/login")).status_code == 200
    assert (await async_client.post("/api/auth/login")).status_code == 200

    res = await async_client.post("/api/auth/login", headers={"user-agent": "pytest"})
    assert res.status_code == 429
    assert res.json()["detail"]["retryAfter"] == 15

    state = get_state(app)
    blocks = state.store.events(EventCategory.rate_limit_block)
    assert len(blocks) == 1
    assert blocks[0].get("endpoint") == "/login"
    assert blocks[0].get("userAgent") == "pytest"

    logged = [e for e in state.security_log.read_entries() if e["event"] == "rate_limit_block"]
    assert logged[0]["limit"] == 2
    assert logged[0]["windowMs"] == 900000

    clock.advance(900)
    assert (await async_client.post("/api/auth/login")).status_code == 200


def test_rate_limiter_drops_expired_keys(clock):
    limiter = RateLimiter("/login", 5, 60, clock=clock)
    for i in range(1000):
        assert limiter.hit(f"10.0.{i // 256}.{i % 256}") is True
    assert limiter.tracked_keys == 1000

    clock.advance(30)
    limiter.hit("10.9.9.9")
    assert limiter.tracked_keys == 1001

    clock.advance(3600)
    assert limiter.hit("192.0.2.1") is True
    assert limiter.tracked_keys == 1


def test_rate_limiter_purge_keeps_live_windows(clock):
    limiter = RateLimiter("/login", 2, 60, clock=clock)
    limiter.hit("old")
    clock.advance(45)
    limiter.hit("fresh")
    clock.advance(20)

    assert limiter.purge_expired() == 1
    assert limiter.tracked_keys == 1
    assert limiter.hit("fresh") is True
    assert limiter.hit("fresh") is False
