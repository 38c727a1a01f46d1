import hashlib
import hmac
import json

import httpx
import pytest

from ptar.saas import webhooks


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text

    @property
    def is_success(self):
        return 200 <= self.status_code < 300


@pytest.fixture
def deliveries(monkeypatch):
    """Records outgoing webhook POSTs; set `.status` to make the receiver fail."""

    class Receiver(list):
        status = 200
        error = None

    sent = Receiver()

    def fake_post(url, body, headers, timeout):
        sent.append({"url": url, "body": body, "headers": headers})
        if sent.error is not None:
            raise sent.error
        return FakeResponse(sent.status)

    monkeypatch.setattr(webhooks, "post_payload", fake_post)
    return sent


def _hook(client, owner, events):
    r = client.post("/api/webhooks", json={"url": "https://hooks.example.com/ptar", "events": events}, headers=owner)
    assert r.status_code == 201, r.text
    return r.json()


def test_secret_shown_once(saas_client, owner):
    hook = _hook(saas_client, owner, ["plant.created"])
    assert hook["secret"].startswith("whsec_")
    shown = saas_client.get(f"/api/webhooks/{hook['id']}", headers=owner).json()
    assert shown["secret"] == hook["secret"][:10] + "..."
    assert shown["events"] == ["plant.created"]


def test_webhook_validation(saas_client, owner):
    r = saas_client.post("/api/webhooks", json={"url": "ftp://x"}, headers=owner)
    assert r.status_code == 400
    r = saas_client.post("/api/webhooks", json={"url": "https://x.ec", "events": ["plant.exploded"]}, headers=owner)
    assert r.status_code == 400
    hook = _hook(saas_client, owner, ["*"])
    assert saas_client.patch(f"/api/webhooks/{hook['id']}", json={"status": "failed"}, headers=owner).status_code == 400


def test_delivery_is_signed(saas_client, owner, deliveries):
    hook = _hook(saas_client, owner, ["plant.created"])
    saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner)

    assert len(deliveries) == 1
    sent = deliveries[0]
    expected = hmac.new(hook["secret"].encode(), sent["body"].encode(), hashlib.sha256).hexdigest()
    assert sent["headers"]["X-Webhook-Signature"] == f"sha256={expected}"
    assert sent["headers"]["X-Webhook-Event"] == "plant.created"
    payload = json.loads(sent["body"])
    assert payload["event"] == "plant.created"
    assert payload["data"]["name"] == "LA LUZ"
    assert payload["organization_id"] == payload["data"]["organization_id"]

    logs = saas_client.get(f"/api/webhooks/{hook['id']}/logs", headers=owner).json()
    assert [(entry["event"], entry["response_status"]) for entry in logs] == [("plant.created", 200)]
    assert saas_client.get(f"/api/webhooks/{hook['id']}", headers=owner).json()["last_triggered_at"]


def test_only_subscribed_events_are_sent(saas_client, owner, deliveries):
    _hook(saas_client, owner, ["plant.deleted"])
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    saas_client.patch(f"/api/plants/{plant['id']}", json={"location": "Guayaquil"}, headers=owner)
    assert deliveries == []
    saas_client.delete(f"/api/plants/{plant['id']}", headers=owner)
    assert [d["headers"]["X-Webhook-Event"] for d in deliveries] == ["plant.deleted"]


def test_other_organizations_hooks_not_called(saas_client, owner, deliveries):
    from conftest import register

    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    _hook(saas_client, other, ["*"])
    saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner)
    assert deliveries == []


def test_repeated_failures_disable_webhook(saas_client, owner, deliveries):
    hook = _hook(saas_client, owner, ["plant.updated"])
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    deliveries.status = 500

    for i in range(webhooks.MAX_FAILURES):
        saas_client.patch(f"/api/plants/{plant['id']}", json={"location": f"Km {i}"}, headers=owner)
    state = saas_client.get(f"/api/webhooks/{hook['id']}", headers=owner).json()
    assert state["status"] == "failed"
    assert state["failure_count"] == webhooks.MAX_FAILURES

    saas_client.patch(f"/api/plants/{plant['id']}", json={"location": "Km 99"}, headers=owner)
    assert len(deliveries) == webhooks.MAX_FAILURES

    r = saas_client.patch(f"/api/webhooks/{hook['id']}", json={"status": "active"}, headers=owner)
    assert r.json()["failure_count"] == 0
    assert r.json()["status"] == "active"


def test_success_resets_failure_count(saas_client, owner, deliveries):
    hook = _hook(saas_client, owner, ["plant.updated"])
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    deliveries.error = httpx.ConnectError("connection refused")
    saas_client.patch(f"/api/plants/{plant['id']}", json={"location": "A"}, headers=owner)
    state = saas_client.get(f"/api/webhooks/{hook['id']}", headers=owner).json()
    assert state["failure_count"] == 1
    log = saas_client.get(f"/api/webhooks/{hook['id']}/logs", headers=owner).json()[0]
    assert log["response_status"] == 0
    assert "connection refused" in log["response_body"]

    deliveries.error = None
    r = saas_client.post(f"/api/webhooks/{hook['id']}/logs/{log['id']}/retry", headers=owner)
    assert r.json() == {"success": True}
    assert saas_client.get(f"/api/webhooks/{hook['id']}", headers=owner).json()["failure_count"] == 0


def test_ping(saas_client, owner, deliveries):
    hook = _hook(saas_client, owner, ["*"])
    r = saas_client.post(f"/api/webhooks/{hook['id']}/test", headers=owner)
    assert r.json() == {"success": True, "status": 200}
    assert deliveries[0]["headers"]["X-Webhook-Event"] == "test.ping"

    deliveries.error = httpx.ConnectError("boom")
    r = saas_client.post(f"/api/webhooks/{hook['id']}/test", headers=owner)
    assert r.json() == {"success": False, "error": "boom"}


def test_rotate_secret(saas_client, owner, deliveries):
    hook = _hook(saas_client, owner, ["plant.created"])
    rotated = saas_client.post(f"/api/webhooks/{hook['id']}/rotate-secret", headers=owner).json()
    assert rotated["secret"] != hook["secret"]
    saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner)
    sent = deliveries[0]
    expected = hmac.new(rotated["secret"].encode(), sent["body"].encode(), hashlib.sha256).hexdigest()
    assert sent["headers"]["X-Webhook-Signature"] == f"sha256={expected}"


def test_domain_events(saas_client, owner, deliveries):
    _hook(saas_client, owner, ["data.alert", "maintenance.completed", "ticket.resolved", "user.invited"])
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()

    saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "pH", "value": 7.2, "measurement_date": "2026-01-10"},
        headers=owner,
    )
    assert deliveries == []
    saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "DQO", "value": 230, "measurement_date": "2026-01-10"},
        headers=owner,
    )
    alert = json.loads(deliveries[-1]["body"])
    assert alert["event"] == "data.alert"
    assert alert["data"]["alert_type"] == "critical"
    assert alert["data"]["plant_name"] == "LA LUZ"

    task = saas_client.post(
        "/api/maintenance/tasks",
        json={"plant_id": plant["id"], "description": "Cambio de aceite", "scheduled_date": "2030-03-01"},
        headers=owner,
    ).json()
    saas_client.post(f"/api/maintenance/tasks/{task['id']}/complete", headers=owner)

    ticket = saas_client.post("/api/tickets", json={"subject": "x", "description": "y"}, headers=owner).json()
    saas_client.patch(f"/api/tickets/{ticket['id']}", json={"status": "resolved"}, headers=owner)

    saas_client.post("/api/users/invite", json={"email": "op@sur.ec"}, headers=owner)

    events = [d["headers"]["X-Webhook-Event"] for d in deliveries]
    assert events == ["data.alert", "maintenance.completed", "ticket.resolved", "user.invited"]
