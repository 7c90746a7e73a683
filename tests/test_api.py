"""API tests: webhook endpoints, usage governance and operator actions."""

import json

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import build_runtime
from models.errors import PersistenceFailure
from webhooks import cloud_api_signature

from conftest import FakeChatModel


ADMIN = {"X-Admin-Token": "admin-secret"}


def cloud_payload(text="Quero agendar uma consulta", message_id="wamid.API1", sender="5511988887777"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "contacts": [{"profile": {"name": "João"}, "wa_id": sender}],
                    "messages": [{
                        "from": sender,
                        "id": message_id,
                        "timestamp": "1760000000",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }


def signed(payload, secret="app-secret"):
    raw = json.dumps(payload).encode()
    return raw, {"X-Hub-Signature-256": cloud_api_signature(raw, secret), "Content-Type": "application/json"}


@pytest.fixture
def model():
    return FakeChatModel(default_text="Olá João! Como posso ajudar?")


@pytest.fixture
def runtime(settings, db, sender, model):
    runtime = build_runtime(settings, db=db, sender=sender, model_factory=lambda agent_config: model)
    yield runtime
    runtime.orchestrator.shutdown()
    runtime.registry.shutdown()


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as client:
        yield client


@pytest.fixture
def org(clinic):
    return clinic


class TestWebhookDelivery:

    def test_signed_delivery_is_processed(self, client, org, sender, model):
        raw, headers = signed(cloud_payload())

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["outcome"] == "replied"
        assert body["conversation_id"]
        assert sender.texts == ["Olá João! Como posso ajudar?"]
        assert sender.sent[0]["to"] == "5511988887777"
        assert len(model.calls) == 1

    def test_redelivery_is_acknowledged_as_duplicate(self, client, org, sender, model):
        raw, headers = signed(cloud_payload())

        client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)
        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert len(sender.sent) == 1
        assert len(model.calls) == 1

    def test_bad_signature(self, client, org, model):
        raw, headers = signed(cloud_payload(), secret="wrong-secret")

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 401
        assert model.calls == []

    def test_malformed_json(self, client, org):
        response = client.post(f"/webhook/cloud_api?org={org}", content=b"{not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_missing_sender_is_bad_request(self, client, org):
        payload = cloud_payload()
        del payload["entry"][0]["changes"][0]["value"]["messages"][0]["from"]
        raw, headers = signed(payload)

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 400

    def test_status_receipt_is_ignored(self, client, org, model):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
            "statuses": [{"id": "wamid.OUT1", "status": "read"}]}}]}]}
        raw, headers = signed(payload)

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "outcome": None, "reason": "no_message",
                                   "conversation_id": None}
        assert model.calls == []

    def test_unknown_organization_is_ignored(self, client):
        raw, headers = signed(cloud_payload())

        response = client.post("/webhook/cloud_api?org=nobody", content=raw, headers=headers)

        assert response.json()["reason"] == "agent_not_configured"

    def test_inactive_agent_is_ignored(self, client, seed_org):
        org = seed_org("org-paused", "generic", is_active=False)
        raw, headers = signed(cloud_payload())

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.json()["reason"] == "agent_inactive"

    def test_unknown_provider(self, client, org):
        response = client.post(f"/webhook/telegram?org={org}", content=b"{}")
        assert response.status_code == 404

    def test_evolution_delivery(self, client, seed_org, sender):
        org = seed_org("org-evo", "real_estate", whatsapp_provider="evolution_api")
        payload = {"event": "messages.upsert", "data": {
            "key": {"remoteJid": "5511977776666@s.whatsapp.net", "fromMe": False, "id": "EVO-API-1"},
            "pushName": "Paula",
            "message": {"conversation": "Procuro apartamento em Pinheiros"},
        }}

        response = client.post(f"/webhook/evolution?org={org}", json=payload, headers={"apikey": "evo-key"})

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert sender.sent[0]["provider"] == "evolution_api"

    def test_persistence_failure_asks_provider_to_retry(self, client, org, runtime, monkeypatch):
        def unavailable(*args, **kwargs):
            raise PersistenceFailure("database is locked")

        monkeypatch.setattr(runtime.store, "resolve_or_create_conversation", unavailable)
        raw, headers = signed(cloud_payload())

        response = client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        assert response.status_code == 503


class TestSubscription:

    def test_handshake(self, client, org):
        response = client.get(f"/webhook/cloud_api?org={org}&hub.mode=subscribe"
                              "&hub.verify_token=verify-me&hub.challenge=98765")

        assert response.status_code == 200
        assert response.text == "98765"

    def test_wrong_token(self, client, org):
        response = client.get(f"/webhook/cloud_api?org={org}&hub.mode=subscribe"
                              "&hub.verify_token=nope&hub.challenge=98765")
        assert response.status_code == 403

    def test_missing_parameters(self, client, org):
        response = client.get(f"/webhook/cloud_api?org={org}&hub.mode=subscribe")
        assert response.status_code == 400


class TestUsage:

    def test_requires_admin_token(self, client, org):
        assert client.get(f"/usage/{org}").status_code == 401
        assert client.get(f"/usage/{org}", headers={"X-Admin-Token": "guess"}).status_code == 401

    def test_usage_after_a_turn(self, client, org):
        raw, headers = signed(cloud_payload())
        client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers)

        response = client.get(f"/usage/{org}?period=month", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["total_requests"] == 1
        assert body["success_count"] == 1
        assert body["by_model"] == {"fake-model": 1}

    def test_invalid_period(self, client, org):
        assert client.get(f"/usage/{org}?period=decade", headers=ADMIN).status_code == 400

    def test_quota_status(self, client, org, set_quota):
        set_quota(org, request_limit=10)

        response = client.get(f"/usage/{org}/quota", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["request_limit"] == 10
        assert body["requests_used"] == 0
        assert body["exhausted"] is False


class TestConversations:

    def _deliver(self, client, org, message_id="wamid.API1"):
        raw, headers = signed(cloud_payload(message_id=message_id))
        return client.post(f"/webhook/cloud_api?org={org}", content=raw, headers=headers).json()["conversation_id"]

    def test_transcript(self, client, org):
        conversation_id = self._deliver(client, org)

        response = client.get(f"/conversations/{conversation_id}/messages?org={org}", headers=ADMIN)

        assert response.status_code == 200
        rows = response.json()
        assert [row["direction"] for row in rows] == ["inbound", "outbound"]
        assert rows[1]["delivery_status"] == "sent"

    def test_transcript_is_scoped_to_organization(self, client, org, seed_org):
        conversation_id = self._deliver(client, org)
        other = seed_org("org-other", "generic")

        response = client.get(f"/conversations/{conversation_id}/messages?org={other}", headers=ADMIN)

        assert response.status_code == 404

    def test_take_over_then_close(self, client, org, sender):
        conversation_id = self._deliver(client, org)
        action = f"/conversations/{conversation_id}/actions"

        taken = client.post(action, headers=ADMIN, json={"organization_id": org, "action": "take_over",
                                                         "operator_name": "Carla"})
        assert taken.json() == {"success": True, "action": "take_over", "new_status": "transferred"}

        self._deliver(client, org, message_id="wamid.API2")
        assert len(sender.sent) == 1

        closed = client.post(action, headers=ADMIN, json={"organization_id": org, "action": "close"})
        assert closed.json()["new_status"] == "closed"

        again = client.post(action, headers=ADMIN, json={"organization_id": org, "action": "return_to_ai"})
        assert again.status_code == 409

    def test_unknown_conversation(self, client, org):
        response = client.post("/conversations/missing/actions", headers=ADMIN,
                               json={"organization_id": org, "action": "close"})
        assert response.status_code == 404

    def test_invalid_action(self, client, org):
        response = client.post("/conversations/any/actions", headers=ADMIN,
                               json={"organization_id": org, "action": "archive"})
        assert response.status_code == 422


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["status"] == "operational"
