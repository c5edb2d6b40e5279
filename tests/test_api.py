"""Tests for the HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from deploy_autofix import __version__
from deploy_autofix.monitor import sign_payload
from deploy_autofix.platform_client import ProbeOutcome
from deploy_autofix.services import build_services

API_KEY = "test-key"
WEBHOOK_SECRET = "whsec-test"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def services(github, fake_platform):
    return build_services(github=github, platform=fake_platform())


@pytest.fixture
def client(services):
    from deploy_autofix.api import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client


def signed(event):
    raw = json.dumps(event).encode()
    return raw, {"X-Railway-Signature": sign_payload(raw, WEBHOOK_SECRET)}


class TestWebhook:
    """Tests for POST /webhooks/railway."""

    def test_valid_signature_accepted(self, client):
        raw, headers = signed({"type": "deployment.succeeded", "data": {"id": "dep-1"}})

        response = client.post("/webhooks/railway", content=raw, headers=headers)

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "type": "deployment.succeeded"}
        alerts = client.get("/alerts").json()
        assert alerts["by_type"] == {"DEPLOYMENT_SUCCEEDED": 1}

    def test_bad_signature_rejected_without_side_effects(self, client):
        raw, _ = signed({"type": "deployment.failed", "data": {"error": "boom"}})

        response = client.post(
            "/webhooks/railway", content=raw, headers={"X-Railway-Signature": "0" * 64}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}
        assert client.get("/alerts").json()["total"] == 0

    def test_non_ascii_signature_rejected(self, client):
        raw, _ = signed({"type": "deployment.failed", "data": {"error": "boom"}})

        response = client.post(
            "/webhooks/railway", content=raw, headers={"X-Railway-Signature": b"\xe9" + b"0" * 63}
        )

        assert response.status_code == 401
        assert client.get("/alerts").json()["total"] == 0

    def test_missing_signature_rejected(self, client):
        raw, _ = signed({"type": "deployment.succeeded"})

        response = client.post("/webhooks/railway", content=raw)

        assert response.status_code == 401
        assert client.get("/alerts").json()["total"] == 0

    def test_malformed_body(self, client):
        raw = b"not json"
        headers = {"X-Railway-Signature": sign_payload(raw, WEBHOOK_SECRET)}

        response = client.post("/webhooks/railway", content=raw, headers=headers)

        assert response.status_code == 400


class TestErrors:
    """Tests for POST /errors."""

    def test_requires_api_key(self, client):
        response = client.post("/errors", json={"error": "ECONNREFUSED"})
        assert response.status_code == 401

    def test_rejects_wrong_api_key(self, client):
        response = client.post(
            "/errors", json={"error": "ECONNREFUSED"}, headers={"X-API-Key": "nope"}
        )
        assert response.status_code == 401

    def test_requires_message(self, client):
        response = client.post("/errors", json={"endpoint": "/login"}, headers=HEADERS)
        assert response.status_code == 422

    def test_rejects_bad_timestamp(self, client):
        response = client.post(
            "/errors", json={"error": "boom", "timestamp": "yesterday"}, headers=HEADERS
        )
        assert response.status_code == 422

    def test_classify_without_repository(self, client):
        response = client.post(
            "/errors",
            json={"error": "Error: connect ECONNREFUSED 127.0.0.1:27017"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["decision"]["action"]["type"] == "AUTO_FIX"
        assert body["classification"]["matched_signature"] == "connection_refused"
        assert body["remediation"] == "not_required"
        assert body["repository"] is None

    def test_dispatches_remediation(self, client, fake_repo):
        repo = fake_repo()

        response = client.post(
            "/errors",
            json={"error": "Error: connect ECONNREFUSED 127.0.0.1:27017", "repository": "acme/shop"},
            headers=HEADERS,
        )

        assert response.json()["remediation"] == "dispatched"
        history = client.get("/fix-history").json()
        assert len(history) == 1
        assert history[0]["fix_ids"] == ["DATABASE_CONNECTION"]
        assert history[0]["success"] is True
        assert len(repo.pulls) == 1


class TestProbeAndTargets:
    def test_probe_is_dispatched(self, client, services):
        response = client.post("/probe", headers=HEADERS)

        assert response.status_code == 202
        body = response.json()
        assert body["dispatched"] is True
        assert body["target"] == "default"
        # Background tasks finish before the test client returns
        assert services.platform.probe_calls == 1
        assert client.get("/health").json()["targets"].get("default", "HEALTHY") == "HEALTHY"

    def test_probe_requires_api_key(self, client):
        assert client.post("/probe").status_code == 401

    def test_escalate_then_acknowledge(self, client, services):
        services.platform.probes = [
            ProbeOutcome.CONNECTION_REFUSED, ProbeOutcome.CONNECTION_REFUSED,
        ]

        probed = client.post("/probe", json={"target": "svc-1"}, headers=HEADERS)
        assert probed.status_code == 202
        assert client.get("/health").json()["targets"]["svc-1"] == "ESCALATED"

        response = client.post("/targets/svc-1/acknowledge", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"target": "svc-1", "state": "HEALTHY"}

    def test_acknowledge_healthy_target_conflicts(self, client):
        response = client.post("/targets/svc-1/acknowledge", headers=HEADERS)
        assert response.status_code == 409


class TestAlertsAndMetrics:
    def test_resolve_alert(self, client):
        raw, headers = signed({"type": "deployment.failed", "data": {"error": "boom"}})
        client.post("/webhooks/railway", content=raw, headers=headers)
        alert = next(
            a for a in client.get("/alerts").json()["active"] if a["type"] == "DEPLOYMENT_ERROR"
        )

        response = client.post(f"/alerts/{alert['id']}/resolve", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "RESOLVED"
        again = client.post(f"/alerts/{alert['id']}/resolve", headers=HEADERS)
        assert again.json()["resolved_at"] == response.json()["resolved_at"]

    def test_resolve_unknown_alert(self, client):
        response = client.post("/alerts/missing/resolve", headers=HEADERS)
        assert response.status_code == 404

    def test_metrics(self, client):
        metrics = client.get("/metrics").json()

        assert metrics["total_fixes"] == 0
        assert metrics["success_rate"] == 1.0
        assert metrics["active_alerts"] == 0
        assert metrics["targets"] == {}

    def test_health(self, client):
        assert client.get("/health").json() == {
            "status": "ok", "version": __version__, "targets": {},
        }
