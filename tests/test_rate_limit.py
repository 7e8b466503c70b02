"""Tests for the rate limiting middleware."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from middleware.rate_limit import RateLimitConfig, RateLimitMiddleware


def _client(config: RateLimitConfig) -> TestClient:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, config=config)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post("/workbooks/{workbook_id}/instructions")
    async def instructions(workbook_id: str):
        return {"id": workbook_id}

    return TestClient(app)


@pytest.fixture
def generous():
    return RateLimitConfig(
        requests_per_minute=1000,
        requests_per_hour=1000,
        translator_requests_per_minute=2,
        translator_requests_per_hour=100,
        burst_limit=1000,
    )


def test_headers_on_success(generous):
    response = _client(generous).get("/ping")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "1000"
    assert response.headers["X-RateLimit-Remaining"] == "999"


def test_burst_limit():
    client = _client(RateLimitConfig(burst_limit=2, requests_per_minute=100))
    statuses = [client.get("/ping").status_code for _ in range(3)]
    assert statuses[:2] == [200, 200]
    assert statuses[2] == 429


def test_translator_budget(generous):
    client = _client(generous)
    assert client.post("/workbooks/abc/instructions").status_code == 200
    assert client.post("/workbooks/abc/instructions").status_code == 200

    limited = client.post("/workbooks/abc/instructions")
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    assert "instructions per minute" in limited.json()["detail"]

    # Plain requests keep their own budget
    assert client.get("/ping").status_code == 200


def test_clients_tracked_separately():
    client = _client(RateLimitConfig(burst_limit=1, requests_per_minute=100))
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200
