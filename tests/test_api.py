from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from dealflow.context import IngestionContext
from dealflow.main import create_app
from dealflow.services.provider_client import ProviderTransientError
from dealflow.services.store import InMemoryStateRepository
from support import FakeProvider, FakePublisher, build_context, make_product, make_rule, make_settings

ADMIN_HEADERS = {"X-API-Key": "admin-key"}


def _client(context: IngestionContext) -> Iterator[TestClient]:
    asyncio.run(context.open())
    with TestClient(create_app(context)) as client:
        yield client


@pytest.fixture
def repository() -> InMemoryStateRepository:
    repository = InMemoryStateRepository()
    repository.add_rule(make_rule("r1", min_discount=20, next_run_at=datetime.now(timezone.utc) + timedelta(minutes=10)))
    repository.add_rule(make_rule("paused", is_active=False))
    return repository


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(
        products={"Electronics": [make_product("A1", current_cents=9000, list_cents=12000)]},
        tokens_consumed=15,
    )


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def context(repository: InMemoryStateRepository, provider: FakeProvider, publisher: FakePublisher) -> IngestionContext:
    return build_context(repository=repository, provider=provider, publisher=publisher)


@pytest.fixture
def client(context: IngestionContext) -> Iterator[TestClient]:
    yield from _client(context)


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ingestion_health_reports_tokens_and_queue(client: TestClient, context: IngestionContext) -> None:
    asyncio.run(context.queue.enqueue("Books", ["r9"]))

    response = client.get("/health/ingestion")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["tokens_available"] == 300
    assert payload["token_capacity"] == 300
    assert payload["tokens_used_today"] == 0
    assert payload["queue_depth"] == 1
    assert payload["last_processed_at"] is None


def test_run_rule_now_returns_metrics(client: TestClient, publisher: FakePublisher) -> None:
    response = client.post("/rules/r1/run")
    assert response.status_code == 200
    payload = response.json()
    assert payload["rule_id"] == "r1"
    assert payload["deals_processed"] == 1
    assert payload["deals_published"] == 1
    assert payload["execution_time_ms"] >= 0
    assert publisher.published == [("r1", "A1")]

    health = client.get("/health/ingestion").json()
    assert health["tokens_used_today"] == 15


def test_run_rule_now_error_mapping(client: TestClient, provider: FakeProvider) -> None:
    assert client.post("/rules/missing/run").status_code == 404
    assert client.post("/rules/paused/run").status_code == 409

    provider.error = ProviderTransientError("provider returned 503")
    response = client.post("/rules/r1/run")
    assert response.status_code == 502
    assert "503" in response.json()["detail"]


def test_run_rule_now_reports_exhausted_quota(repository: InMemoryStateRepository) -> None:
    context = build_context(make_settings(token_capacity=10), repository=repository)
    for client in _client(context):
        response = client.post("/rules/r1/run")
        assert response.status_code == 429


def test_rule_status(client: TestClient, context: IngestionContext) -> None:
    assert client.get("/rules/r1/status").json() == {"rule_id": "r1", "status": "idle"}

    asyncio.run(context.queue.enqueue("Electronics", ["r1"]))
    assert client.get("/rules/r1/status").json()["status"] == "running"
    assert client.get("/rules/missing/status").status_code == 404


def test_admin_routes_require_key(client: TestClient) -> None:
    assert client.get("/admin/metrics").status_code == 401
    assert client.get("/admin/metrics", headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.post("/admin/actions/clear-cache").status_code == 401


def test_admin_routes_unavailable_without_configured_key(repository: InMemoryStateRepository) -> None:
    context = build_context(make_settings(admin_api_key=None), repository=repository)
    for client in _client(context):
        assert client.get("/admin/metrics", headers=ADMIN_HEADERS).status_code == 503


def test_admin_metrics(client: TestClient) -> None:
    client.post("/rules/r1/run")

    response = client.get("/admin/metrics", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    payload = response.json()
    assert payload["metrics"]["deals_published"] == 1
    assert payload["metrics"]["rules_processed"] == 1
    assert payload["metrics"]["token_waits"] == 0
    assert payload["tokens_used_today"] == 15
    assert payload["queue_depth"] == 0


def test_admin_clear_cache(client: TestClient) -> None:
    client.post("/rules/r1/run")

    response = client.post("/admin/actions/clear-cache", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"cleared": 1}
    assert client.post("/admin/actions/clear-cache", headers=ADMIN_HEADERS).json() == {"cleared": 0}


def test_admin_trigger_prefetch(client: TestClient, repository: InMemoryStateRepository) -> None:
    response = client.post(
        "/admin/actions/trigger-prefetch",
        headers=ADMIN_HEADERS,
        json={"categories": ["Books", "Garden", "Books"]},
    )
    assert response.status_code == 202
    assert response.json() == {"requested": ["Books", "Garden"]}
    assert repository.prefetch_request == ["Books", "Garden"]

    upcoming = client.post("/admin/actions/trigger-prefetch", headers=ADMIN_HEADERS)
    assert upcoming.status_code == 202
    assert upcoming.json() == {"requested": ["Electronics"]}
    assert repository.prefetch_request == ["Books", "Garden", "Electronics"]
