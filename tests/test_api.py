"""
HTTP-level tests for the API routers.
"""

import hashlib
import hmac
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from callservice.clients.elevenlabs_client import ElevenLabsClient
from callservice.config import settings
from callservice.main import create_app
from callservice.models.internal_models import CallStatus
from callservice.services.container import build_services
from callservice.services.rate_limiter import RateLimiter
from callservice.services.webhook_payload import WebhookVerifier
from conftest import VALID_TOKEN

SECRET = "whsec_api_tests"
ADMIN_KEY = "staff-key-for-tests"


def provider_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"signed_url": "wss://provider.test/convai?token=signed"})


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock.epoch)


@pytest.fixture
def provider_transport():
    return httpx.MockTransport(provider_handler)


@pytest.fixture
def services(db, clock, limiter, provider_transport):
    return build_services(
        db=db,
        rate_limiter=limiter,
        elevenlabs=ElevenLabsClient(
            api_key="xi_key",
            agent_id="agent_123",
            base_url="https://provider.test",
            timeout=2.0,
            transport=provider_transport
        ),
        verifier=WebhookVerifier(SECRET, clock=clock.epoch),
        clock=clock
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services, enable_observability=False))


def signed_post(client, body: dict, secret: str = SECRET):
    raw = json.dumps(body)
    signature = hmac.new(secret.encode(), raw.encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/api/v1/webhooks/elevenlabs",
        content=raw,
        headers={"content-type": "application/json", "elevenlabs-signature": signature}
    )


class TestTokenValidationEndpoint:
    """Test cases for GET /api/v1/users/validate."""

    def test_valid_token(self, client, user):
        response = client.get("/api/v1/users/validate", params={"token": VALID_TOKEN})

        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "canStart": True,
            "callsToday": 0,
            "userName": "Ana García",
            "userId": user.id,
        }

    def test_invalid_responses_are_byte_identical(self, client, user):
        unknown = client.get("/api/v1/users/validate", params={"token": "tok_unknown_0123456789"})
        empty = client.get("/api/v1/users/validate", params={"token": ""})
        missing = client.get("/api/v1/users/validate")
        malformed = client.get("/api/v1/users/validate", params={"token": "<script>"})

        assert unknown.status_code == empty.status_code == missing.status_code == malformed.status_code == 200
        assert unknown.content == empty.content == missing.content == malformed.content
        assert unknown.json() == {"valid": False}

    def test_rate_limited_after_ten(self, client, user):
        for _ in range(10):
            assert client.get("/api/v1/users/validate", params={"token": VALID_TOKEN}).status_code == 200

        response = client.get("/api/v1/users/validate", params={"token": VALID_TOKEN})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "X-RateLimit-Reset" in response.headers
        assert response.json()["retryAfter"] == 60


class TestCallEndpoints:
    """Test cases for the call lifecycle endpoints."""

    def test_start_and_end(self, client, db, user, clock):
        from datetime import timedelta

        start = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN})
        assert start.status_code == 200
        body = start.json()
        assert body["success"] is True
        assert body["canStart"] is True
        assert body["callsToday"] == 1
        assert body["userName"] == "Ana García"

        clock.advance(timedelta(seconds=42))
        end = client.post("/api/v1/calls/end", json={"callId": body["callId"]})

        assert end.status_code == 200
        assert end.json()["success"] is True
        assert end.json()["duration"] == 42
        assert db.calls.rows[body["callId"]].status == CallStatus.COMPLETED

    def test_quota_exhausted_is_200(self, client, user):
        client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN})
        client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN})

        response = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN})

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "error": "Daily call limit reached",
            "canStart": False,
            "callsToday": 2,
        }

    def test_invalid_token_is_generic_400(self, client, db):
        response = client.post("/api/v1/calls/start", json={"loginToken": "tok_unknown_0123456789"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Could not start call", "canStart": False}
        assert db.calls.rows == {}

    def test_missing_token_is_400(self, client):
        response = client.post("/api/v1/calls/start", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidInput"

    def test_start_rate_limit(self, client, db, center):
        for _ in range(5):
            client.post("/api/v1/calls/start", json={"loginToken": "tok_unknown_0123456789"})

        response = client.post("/api/v1/calls/start", json={"loginToken": "tok_unknown_0123456789"})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    def test_double_end_is_409(self, client, user):
        call_id = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN}).json()["callId"]
        assert client.post("/api/v1/calls/end", json={"callId": call_id}).status_code == 200

        response = client.post("/api/v1/calls/end", json={"callId": call_id})

        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_end_unknown_call_is_404(self, client):
        response = client.post("/api/v1/calls/end", json={"callId": "missing"})
        assert response.status_code == 404

    def test_end_accepts_legacy_conversation_field(self, client, db, user):
        call_id = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN}).json()["callId"]

        client.post("/api/v1/calls/end", json={"callId": call_id, "elevenlabsConversationId": "conv_legacy"})

        assert db.calls.rows[call_id].elevenlabs_conversation_id == "conv_legacy"

    def test_attach_conversation(self, client, db, user):
        call_id = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN}).json()["callId"]

        first = client.patch(f"/api/v1/calls/{call_id}/conversation", json={"conversationId": "conv_1"})
        again = client.patch(f"/api/v1/calls/{call_id}/conversation", json={"conversationId": "conv_1"})
        conflict = client.patch(f"/api/v1/calls/{call_id}/conversation", json={"conversationId": "conv_2"})

        assert first.status_code == 200
        assert first.json() == {"success": True, "alreadyAttached": False, "replayedWebhook": False}
        assert again.json()["alreadyAttached"] is True
        assert conflict.status_code == 409
        assert db.calls.rows[call_id].elevenlabs_conversation_id == "conv_1"

    def test_fail_call(self, client, db, user):
        call_id = client.post("/api/v1/calls/start", json={"loginToken": VALID_TOKEN}).json()["callId"]

        response = client.post(f"/api/v1/calls/{call_id}/fail")

        assert response.status_code == 200
        assert db.calls.rows[call_id].status == CallStatus.FAILED


class TestWebhookEndpoint:
    """Test cases for POST /api/v1/webhooks/elevenlabs."""

    def test_bad_signature_writes_nothing(self, client, db, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")

        response = signed_post(client, {"conversation_id": "conv_1", "transcript": "x"}, secret="wrong")

        assert response.status_code == 401
        assert db.transcripts.writes == 0
        assert db.calls.rows[call.id].status == CallStatus.STARTED
        assert db.pending_webhooks.rows == {}

    def test_missing_signature_is_401(self, client, db):
        response = client.post("/api/v1/webhooks/elevenlabs", content=b'{"conversation_id":"conv_1"}')
        assert response.status_code == 401

    def test_invalid_json_is_400(self, client):
        raw = "{not json"
        signature = hmac.new(SECRET.encode(), raw.encode(), hashlib.sha256).hexdigest()

        response = client.post("/api/v1/webhooks/elevenlabs", content=raw, headers={"x-signature": signature})

        assert response.status_code == 400

    def test_missing_conversation_id_is_400(self, client):
        response = signed_post(client, {"type": "post_call_transcription", "data": {}})
        assert response.status_code == 400

    def test_correlated_webhook(self, client, db, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")

        response = signed_post(client, {
            "type": "post_call_transcription",
            "data": {"conversation_id": "conv_1", "transcript": [{"role": "user", "message": "hola"}]},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["call_id"] == call.id
        assert body["verified"] is True
        assert "processing_time_ms" in body
        assert db.transcripts.rows[call.id].content == "user: hola"
        assert db.calls.rows[call.id].status == CallStatus.COMPLETED

    def test_correlation_miss_is_200(self, client, db, user, clock):
        db.add_call(user, clock())

        response = signed_post(client, {"conversation_id": "conv_missing"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["conversation_id"] == "conv_missing"
        assert len(body["recent_calls"]) == 1
        assert "conv_missing" in db.pending_webhooks.rows

    def test_status_endpoint(self, client):
        response = client.get("/api/v1/webhooks/elevenlabs")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert set(response.json()["configured"]) == {"supabase_url", "service_role_key", "webhook_secret"}


class TestProviderSessionEndpoint:
    """Test cases for GET /api/v1/provider/session."""

    def test_returns_signed_url(self, client):
        response = client.get("/api/v1/provider/session")

        assert response.status_code == 200
        assert response.json() == {"signedUrl": "wss://provider.test/convai?token=signed", "agentId": "agent_123"}

    def test_unconfigured_is_503(self, client, services):
        services.elevenlabs.api_key = ""

        response = client.get("/api/v1/provider/session")

        assert response.status_code == 503
        assert response.json()["error"] == "ProviderNotConfigured"

    def test_upstream_failure_marks_call_failed(self, client, services, db, user, clock):
        services.elevenlabs._transport = httpx.MockTransport(lambda request: httpx.Response(503))
        call = db.add_call(user, clock())

        response = client.get("/api/v1/provider/session", params={"callId": call.id})

        assert response.status_code == 502
        assert response.json()["error"] == "UpstreamFailure"
        assert db.calls.rows[call.id].status == CallStatus.FAILED
        assert "xi_key" not in response.text


class TestAdminEndpoints:
    """Test cases for the staff API."""

    @pytest.fixture(autouse=True)
    def admin_key(self, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", ADMIN_KEY)

    def headers(self):
        return {"X-Admin-Key": ADMIN_KEY}

    def test_requires_key(self, client):
        assert client.get("/api/v1/admin/centers").status_code == 401
        assert client.get("/api/v1/admin/centers", headers={"X-Admin-Key": "nope"}).status_code == 401

    def test_disabled_without_configured_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", None)
        assert client.get("/api/v1/admin/centers", headers=self.headers()).status_code == 503

    def test_center_and_user_lifecycle(self, client, db):
        center = client.post(
            "/api/v1/admin/centers",
            json={"name": "Centro Sur", "timezone": "Europe/Madrid"},
            headers=self.headers()
        )
        assert center.status_code == 201
        center_id = center.json()["id"]

        created = client.post(
            "/api/v1/admin/users",
            json={"fullName": "Luis Pérez", "centerId": center_id},
            headers=self.headers()
        )
        assert created.status_code == 201
        user = created.json()
        assert len(user["loginToken"]) >= 32

        rotated = client.post(f"/api/v1/admin/users/{user['id']}/rotate-token", headers=self.headers())
        assert rotated.json()["loginToken"] != user["loginToken"]

        validation = client.get("/api/v1/users/validate", params={"token": user["loginToken"]})
        assert validation.json() == {"valid": False}

        listed = client.get("/api/v1/admin/users", params={"centerId": center_id}, headers=self.headers())
        assert [u["id"] for u in listed.json()] == [user["id"]]

        assert client.delete(f"/api/v1/admin/users/{user['id']}", headers=self.headers()).status_code == 200
        assert client.get(f"/api/v1/admin/users/{user['id']}", headers=self.headers()).status_code == 404

    def test_create_center_rejects_unknown_timezone(self, client):
        response = client.post(
            "/api/v1/admin/centers",
            json={"name": "X", "timezone": "Nowhere/City"},
            headers=self.headers()
        )
        assert response.status_code == 400

    def test_null_center_name_is_rejected(self, client, db, center):
        response = client.patch(f"/api/v1/admin/centers/{center.id}", json={"name": None}, headers=self.headers())

        assert response.status_code == 400
        assert db.centers.rows[center.id].name == center.name

    def test_center_rename(self, client, center):
        response = client.patch(f"/api/v1/admin/centers/{center.id}", json={"name": "Centro Este"}, headers=self.headers())

        assert response.status_code == 200
        assert response.json()["name"] == "Centro Este"

    def test_null_user_name_is_rejected(self, client, user):
        response = client.patch(f"/api/v1/admin/users/{user.id}", json={"fullName": None}, headers=self.headers())

        assert response.status_code == 400

    def test_create_user_with_unknown_center(self, client):
        response = client.post(
            "/api/v1/admin/users",
            json={"fullName": "Nadie", "centerId": "missing"},
            headers=self.headers()
        )
        assert response.status_code == 400

    def test_call_detail_includes_transcript(self, client, db, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")
        signed_post(client, {"conversation_id": "conv_1", "transcript": "agent: hola"})

        response = client.get(f"/api/v1/admin/calls/{call.id}", headers=self.headers())

        assert response.status_code == 200
        assert response.json()["status"] == CallStatus.COMPLETED
        assert response.json()["transcript"]["content"] == "agent: hola"

    def test_list_calls_rejects_unknown_status(self, client):
        response = client.get("/api/v1/admin/calls", params={"status": "ringing"}, headers=self.headers())
        assert response.status_code == 400

    def test_reconcile(self, client, db, user, clock):
        from datetime import timedelta

        stale = db.add_call(user, clock() - timedelta(hours=4))

        response = client.post("/api/v1/admin/calls/reconcile", headers=self.headers())

        assert response.status_code == 200
        assert response.json() == {"swept": 1, "callIds": [stale.id]}


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_readyz(self, client):
        assert client.get("/readyz").json() == {"status": "ready", "database": True}

    def test_metrics_counts_requests(self, client):
        client.get("/healthz")

        metrics = client.get("/metrics").json()["metrics"]

        assert metrics["total_requests"] >= 1
        assert set(metrics) == {"total_requests", "error_count", "error_rate", "avg_processing_time_ms"}
