"""HTTP surface over a service bound to the test database."""

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.job_models import JobKind
from app.services.sync_service import SyncService


@pytest.fixture
def service(engine):
    return SyncService(engine)


@pytest.fixture
def client(service):
    # No context manager: the lifespan (real database, workers) stays off
    app.state.sync_service = service
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_on_demand_sync_enqueues_provider_job(client, service, make_integration):
    integration = make_integration()

    resp = client.post(f"/integrations/{integration.id}/sync")

    assert resp.status_code == 202
    job = client.get(f"/queue/jobs/{resp.json()['job_id']}").json()
    assert job["kind"] == JobKind.SYNC_PROVIDER.value
    assert job["state"] == "waiting"
    assert job["payload"]["integration_id"] == integration.id
    assert job["attempt_count"] == 0
    status = client.get("/queue/status").json()
    assert status["waiting"] == 1
    assert status["total"] == 1


def test_unknown_integration_is_404(client):
    assert client.post("/integrations/404/sync").status_code == 404
    assert client.get("/integrations/404/status").status_code == 404
    assert client.post("/integrations/404/disconnect").status_code == 404
    assert client.get("/queue/jobs/404").status_code == 404


def test_tenant_sync_is_coalesced_while_in_flight(client):
    first = client.post("/tenants/tenant-a/sync").json()["job_id"]
    second = client.post("/tenants/tenant-a/sync").json()["job_id"]

    assert first == second
    assert client.get("/queue/status").json()["waiting"] == 1


def test_integration_status_and_disconnect(client, store, make_integration):
    integration = make_integration()
    store.try_claim(integration.id)
    store.mark_idle(integration.id)

    status = client.get(f"/integrations/{integration.id}/status").json()
    assert status["sync_status"] == "idle"
    assert status["last_sync_at"] is not None
    assert status["last_error"] is None

    resp = client.post(f"/integrations/{integration.id}/disconnect")
    assert resp.json()["active"] is False
    assert client.get(f"/integrations/{integration.id}/status").json()["active"] is False


def test_purge_clears_waiting_jobs(client, make_integration):
    integration = make_integration()
    client.post(f"/integrations/{integration.id}/sync")

    assert client.delete("/queue").json()["removed"] == 1
    assert client.get("/queue/status").json()["waiting"] == 0


def test_oauth_authorize(client):
    resp = client.get("/oauth/google-ads/authorize", params={"tenant_id": "tenant-a"})
    assert resp.status_code == 200
    assert "state=tenant-a" in resp.json()["authorization_url"]

    assert client.get("/oauth/tiktok/authorize", params={"tenant_id": "t"}).status_code == 400
    assert client.get("/oauth/shopify/authorize", params={"tenant_id": "t"}).status_code == 400
    assert client.get(
        "/oauth/shopify/authorize", params={"tenant_id": "t", "shop": "demo.myshopify.com"}
    ).status_code == 200


def test_oauth_callback_reports_declined_consent(client, store):
    resp = client.get(
        "/oauth/meta/callback",
        params={
            "error": "access_denied",
            "error_description": "The user denied the request",
            "state": "tenant-a",
        },
    )

    assert resp.status_code == 400
    assert "access_denied" in resp.json()["detail"]
    assert store.list_active("tenant-a") == []


def test_oauth_callback_without_code_is_400(client):
    resp = client.get("/oauth/google-ads/callback", params={"state": "tenant-a"})
    assert resp.status_code == 400
