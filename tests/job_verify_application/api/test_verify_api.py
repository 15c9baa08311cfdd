from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from job_verify_application.api import create_app
from job_verify_application.api import dependencies
from job_verify_application.api.dependencies import get_client_identity, get_prober_factory, get_store
from job_verify_application.services import rate_limiter
from job_verify_application.services.rate_limiter import FixedWindowRateLimiter
from job_verify_application.verification.classifier import ProbeOutcome
from verify_fakes import FakeJobStore, candidate


async def _probe(url: str) -> ProbeOutcome:
    if url.endswith("/gone"):
        return ProbeOutcome(requested_url=url, status_code=404, final_url=url)
    if url.endswith("/moved"):
        return ProbeOutcome(requested_url=url, status_code=200, final_url="https://acme.com/careers")
    return ProbeOutcome(requested_url=url, status_code=200, final_url=url)


@pytest.fixture
def store() -> FakeJobStore:
    return FakeJobStore(
        [
            candidate("live", "https://acme.com/jobs/live", title="Analyst"),
            candidate("gone", "https://acme.com/jobs/gone", title="Associate"),
            candidate("moved", "acme.com/jobs/moved", company="Globex", removalDetectedAt=123),
        ]
    )


@pytest.fixture
def client(store, monkeypatch) -> TestClient:
    monkeypatch.setattr(dependencies.settings, "rate_limit_disabled", False)
    rate_limiter._set_rate_limiter_for_tests(FixedWindowRateLimiter())
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_prober_factory] = lambda: (lambda options: _probe)
    return TestClient(app)


def test_verify_urls_returns_summary_and_results(client, store):
    response = client.get("/api/admin/verify-urls")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    body = response.json()
    summary = body["summary"]
    assert {k: summary[k] for k in ("checked", "alive", "dead", "redirect", "error", "timeout", "dead_marked")} == {
        "checked": 3,
        "alive": 1,
        "dead": 2,
        "redirect": 0,
        "error": 0,
        "timeout": 0,
        "dead_marked": 0,
    }
    assert [r["candidateId"] for r in body["results"]] == ["live", "gone", "moved"]
    moved = body["results"][2]
    assert moved["status"] == "dead-redirect"
    assert moved["url"] == "https://acme.com/jobs/moved"
    assert moved["company"] == "Globex"
    assert moved["alreadyFlagged"] is True
    assert store.fetch_calls[0]["limit"] == 50
    assert store.marked == []


def test_verify_urls_marks_dead_and_caps_limit(client, store):
    response = client.get("/api/admin/verify-urls", params={"markDead": "true", "limit": 1000, "offset": 0})

    assert response.status_code == 200
    assert response.json()["summary"]["dead_marked"] == 2
    assert [job_id for job_id, _ in store.marked] == ["gone", "moved"]
    assert store.fetch_calls[0]["limit"] == 200


def test_verify_urls_company_filter(client, store):
    response = client.get("/api/admin/verify-urls", params={"company": "globex"})

    assert response.json()["summary"]["checked"] == 1
    assert store.fetch_calls[0]["company"] == "globex"


def test_verify_urls_store_failure_is_500(client, store):
    store.fail_reads = True

    response = client.get("/api/admin/verify-urls")

    assert response.status_code == 500
    assert response.json() == {"error": "Verification failed"}
    assert response.headers["cache-control"] == "no-store"


def test_verify_urls_over_time_limit_returns_partial_results(client, store, monkeypatch):
    store.candidates = [candidate(f"fast-{i}", f"https://acme.com/jobs/fast-{i}") for i in range(10)]
    store.candidates.append(candidate("hang", "https://acme.com/jobs/hang"))

    async def slow_probe(url: str) -> ProbeOutcome:
        if url.endswith("/hang"):
            await asyncio.sleep(5)
        return ProbeOutcome(requested_url=url, status_code=200, final_url=url)

    client.app.dependency_overrides[get_prober_factory] = lambda: (lambda options: slow_probe)
    monkeypatch.setattr(dependencies.settings, "verify_max_duration_seconds", 0.3)

    response = client.get("/api/admin/verify-urls")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    body = response.json()
    assert body["partial"] is True
    assert body["skipped"] == 1
    assert body["summary"]["checked"] == 10
    assert body["summary"]["alive"] == 10
    assert [r["candidateId"] for r in body["results"]] == [f"fast-{i}" for i in range(10)]


def test_verify_urls_hanging_probe_in_batch_becomes_timeout(client, store, monkeypatch):
    store.candidates = [
        candidate("fast", "https://acme.com/jobs/fast"),
        candidate("hang", "https://acme.com/jobs/hang"),
    ]

    async def slow_probe(url: str) -> ProbeOutcome:
        if url.endswith("/hang"):
            await asyncio.sleep(5)
        return ProbeOutcome(requested_url=url, status_code=200, final_url=url)

    client.app.dependency_overrides[get_prober_factory] = lambda: (lambda options: slow_probe)
    monkeypatch.setattr(dependencies.settings, "verify_max_duration_seconds", 0.2)

    response = client.get("/api/admin/verify-urls")

    assert response.status_code == 200
    body = response.json()
    assert body["partial"] is False
    assert [r["status"] for r in body["results"]] == ["alive", "timeout"]
    assert body["results"][1]["errorDetail"] == "verification time limit reached"
    assert body["summary"]["timeout"] == 1


def test_verify_urls_sixth_call_is_rate_limited(client):
    headers = {"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}
    for _ in range(5):
        assert client.get("/api/admin/verify-urls", headers=headers).status_code == 200

    limited = client.get("/api/admin/verify-urls", headers=headers)

    assert limited.status_code == 429
    assert limited.headers["retry-after"] == "300"
    assert limited.json() == {"error": "Too many requests"}
    other = client.get("/api/admin/verify-urls", headers={"X-Forwarded-For": "198.51.100.8"})
    assert other.status_code == 200


def test_rate_limit_can_be_disabled(client, monkeypatch):
    monkeypatch.setattr(dependencies.settings, "rate_limit_disabled", True)

    for _ in range(7):
        assert client.get("/api/admin/verify-urls").status_code == 200


def test_check_url_flags_dead_job(client, store):
    response = client.get("/api/jobs/check-url", params={"id": "gone"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "dead"
    assert body["flagged"] is True
    assert body["applyUrl"] == "https://acme.com/jobs/gone"
    assert [job_id for job_id, _ in store.marked] == ["gone"]


def test_check_url_stamps_live_job(client, store):
    body = client.get("/api/jobs/check-url", params={"id": "live"}).json()

    assert body["status"] == "alive"
    assert body["flagged"] is False
    assert store.stamped[0][0] == ["live"]


@pytest.mark.parametrize(("params", "status"), [({}, 400), ({"id": " "}, 400), ({"id": "missing"}, 404)])
def test_check_url_rejects_bad_ids(client, params, status):
    assert client.get("/api/jobs/check-url", params=params).status_code == status


def test_check_url_limit_is_thirty_per_minute(client):
    for _ in range(30):
        client.get("/api/jobs/check-url", params={"id": "live"})

    limited = client.get("/api/jobs/check-url", params={"id": "live"})

    assert limited.status_code == 429
    assert limited.headers["retry-after"] == "60"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def _request(headers: dict, client_host: str | None = "192.0.2.1") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": (client_host, 1234) if client_host else None,
    }
    return Request(scope)


@pytest.mark.parametrize(
    ("headers", "client_host", "expected"),
    [
        ({"X-Forwarded-For": "203.0.113.5, 10.0.0.2"}, "192.0.2.1", "203.0.113.5"),
        ({"X-Real-IP": "203.0.113.6"}, "192.0.2.1", "203.0.113.6"),
        ({}, "192.0.2.1", "192.0.2.1"),
        ({}, None, "unknown"),
    ],
)
def test_client_identity_resolution(headers, client_host, expected):
    assert get_client_identity(_request(headers, client_host)) == expected
