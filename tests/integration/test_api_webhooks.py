"""
API tests: PagerDuty and Slack webhooks, the incidents router and health checks.
"""
import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

import pytest
from httpx import ASGITransport, AsyncClient

from selfheal.app.api.webhooks import verify_slack_signature
from selfheal.app.main import create_app

INVESTIGATION_NOTE = """Investigation complete.
Root Cause: Connection pool exhausted in inventory-service
Hypothesis: A deploy leaked database connections
Confidence: 95%
Affected Services: inventory-service
Recommendation: Recycle the pool
"""


def _event(event_type, data):
    return {"event": {"id": "EV1", "event_type": event_type, "data": data}}


def _triggered(incident_id="P1", urgency="low"):
    return _event("incident.triggered", {
        "id": incident_id,
        "title": "Inventory API latency",
        "urgency": urgency,
        "service": {"id": "S1", "summary": "inventory-service"},
    })


def _annotated(incident_id="P1", content=INVESTIGATION_NOTE):
    return _event("incident.annotated", {
        "incident": {"id": incident_id, "summary": "Inventory API latency"},
        "content": content,
    })


def _slack_action(action_id, incident_id="P1", user="alice"):
    payload = {
        "type": "block_actions",
        "user": {"id": "U1", "name": user},
        "actions": [{"action_id": action_id, "value": incident_id}],
    }
    return {"payload": json.dumps(payload)}


# ── PagerDuty ────────────────────────────────────────────────────────────────


async def test_triggered_creates_incident(client):
    response = await client.post("/webhooks/pagerduty", json=_triggered())

    assert response.status_code == 200
    assert response.json() == {"received": True, "event_type": "incident.triggered"}

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "INVESTIGATING"
    assert incident["service_name"] == "inventory-service"
    assert incident["service_id"] == "S1"
    assert incident["urgency"] == "low"


async def test_investigation_note_runs_pipeline(client, collaborators):
    await client.post("/webhooks/pagerduty", json=_triggered())
    response = await client.post("/webhooks/pagerduty", json=_annotated())
    assert response.status_code == 200

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "RESOLVED"
    assert incident["hypothesis"] == "A deploy leaked database connections"
    assert incident["confidence"] == 95
    assert [h["to"] for h in incident["stage_history"]][-1] == "RESOLVED"

    query = collaborators.context.search.await_args.args[0]
    assert query == "Connection pool exhausted in inventory-service inventory-service"


async def test_note_on_unknown_incident_joins_late(client):
    await client.post("/webhooks/pagerduty", json=_annotated("P7"))

    incident = (await client.get("/api/v1/incidents/P7")).json()
    assert incident["title"] == "Inventory API latency"
    assert incident["stage_history"][0]["from"] == "TRIGGERED"


async def test_legacy_notes_shape(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_event("incident.annotated", {
        "id": "P1",
        "notes": [{"content": "paged dba"}, {"content": INVESTIGATION_NOTE}],
    }))

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "RESOLVED"


async def test_ordinary_note_is_ignored(client, collaborators):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_annotated(content="Paged the DBA, waiting"))

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "INVESTIGATING"
    collaborators.context.search.assert_not_awaited()


async def test_late_note_does_not_fail_the_webhook(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_annotated())

    response = await client.post("/webhooks/pagerduty", json=_annotated())
    assert response.status_code == 200


async def test_acknowledged(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_event("incident.acknowledged", {
        "id": "P1", "assignees": [{"summary": "Carol Oncall"}],
    }))

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["acknowledged_by"] == "Carol Oncall"
    assert incident["current_stage"] == "INVESTIGATING"


async def test_escalated(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_event("incident.escalated", {
        "id": "P1", "escalation_policy": {"summary": "DBA"},
    }))

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "ESCALATED"
    assert incident["error"] == "Escalated in PagerDuty (DBA)"


async def test_resolved_externally(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_event("incident.resolved", {"id": "P1"}))

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "ESCALATED"
    assert incident["error_stage"] == "external_resolution"
    assert incident["resolution_source"] == "pagerduty"


async def test_note_after_external_resolution_does_nothing(client, collaborators):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/webhooks/pagerduty", json=_event("incident.resolved", {"id": "P1"}))

    response = await client.post("/webhooks/pagerduty", json=_annotated())

    assert response.status_code == 200
    assert (await client.get("/api/v1/incidents")).json() == []
    collaborators.context.search.assert_not_awaited()
    collaborators.execution.run.assert_not_awaited()


async def test_unhandled_event_type_is_accepted(client):
    response = await client.post("/webhooks/pagerduty", json=_event("service.updated", {}))
    assert response.status_code == 200
    assert response.json()["event_type"] == "service.updated"


@pytest.mark.parametrize("body", [
    b"not json",
    json.dumps({"event": {}}).encode(),
    json.dumps({"messages": []}).encode(),
    json.dumps(_event("incident.triggered", {"title": "no id"})).encode(),
])
async def test_malformed_payloads(client, body):
    response = await client.post("/webhooks/pagerduty", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


class TestSignature:
    SECRET = "s3cret"

    @pytest.fixture
    async def signed_client(self, settings, collaborators, sql_store):
        app = create_app(
            settings.model_copy(update={"pagerduty_webhook_secret": self.SECRET}), collaborators, store=sql_store
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c

    def _sign(self, body: bytes) -> str:
        return "v1=" + hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()

    async def test_valid_signature(self, signed_client):
        body = json.dumps(_triggered()).encode()
        response = await signed_client.post(
            "/webhooks/pagerduty", content=body, headers={"X-PagerDuty-Signature": self._sign(body)}
        )
        assert response.status_code == 200

    async def test_any_rotated_signature_matches(self, signed_client):
        body = json.dumps(_triggered()).encode()
        header = f"v1=deadbeef, {self._sign(body)}"
        response = await signed_client.post("/webhooks/pagerduty", content=body, headers={"X-PagerDuty-Signature": header})
        assert response.status_code == 200

    @pytest.mark.parametrize("header", [None, "v1=deadbeef", "v0=abc"])
    async def test_rejected_signature(self, signed_client, header):
        headers = {"X-PagerDuty-Signature": header} if header else {}
        response = await signed_client.post("/webhooks/pagerduty", content=json.dumps(_triggered()).encode(), headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_SIGNATURE"
        assert (await signed_client.get("/api/v1/incidents/P1")).status_code == 404


# ── Slack ────────────────────────────────────────────────────────────────────


async def _park_for_approval(client):
    await client.post("/webhooks/pagerduty", json=_triggered(urgency="high"))
    await client.post("/webhooks/pagerduty", json=_annotated())
    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["pending_approval"] is True


async def test_slack_approve(client, collaborators):
    await _park_for_approval(client)

    response = await client.post("/webhooks/slack", data=_slack_action("approve_remediation"))

    assert response.status_code == 200
    body = response.json()
    assert body["response_type"] == "in_channel"
    assert "approved by <@alice>" in body["text"]

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "RESOLVED"
    assert incident["approved_by"] == "alice"
    collaborators.execution.run.assert_awaited_once()


async def test_slack_reject(client, collaborators):
    await _park_for_approval(client)

    response = await client.post("/webhooks/slack", data=_slack_action("reject_remediation", user="bob"))
    assert "rejected by <@bob>" in response.json()["text"]

    incident = (await client.get("/api/v1/incidents/P1")).json()
    assert incident["current_stage"] == "ESCALATED"
    assert incident["rejected_by"] == "bob"
    collaborators.execution.run.assert_not_awaited()


@pytest.mark.parametrize("data", [
    {},
    {"payload": json.dumps({"type": "view_submission"})},
    {"payload": json.dumps({"type": "block_actions", "actions": []})},
    {"payload": json.dumps({"type": "block_actions", "actions": [{"action_id": "other", "value": "P1"}]})},
])
async def test_slack_ignores_other_interactions(client, data):
    response = await client.post("/webhooks/slack", data=data)
    assert response.status_code == 200
    assert response.json() == {}


class TestSlackSignature:
    SECRET = "slack-s3cret"

    @pytest.fixture
    async def signed_client(self, settings, collaborators, sql_store):
        app = create_app(
            settings.model_copy(update={"slack_signing_secret": self.SECRET}), collaborators, store=sql_store
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c

    def _headers(self, body: bytes, timestamp=None, secret=None):
        timestamp = str(int(time.time())) if timestamp is None else timestamp
        base = b"v0:" + timestamp.encode() + b":" + body
        signature = "v0=" + hmac.new((secret or self.SECRET).encode(), base, hashlib.sha256).hexdigest()
        return {
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": signature,
            "Content-Type": "application/x-www-form-urlencoded",
        }

    async def test_signed_approval_is_applied(self, signed_client, collaborators):
        await _park_for_approval(signed_client)
        body = urlencode(_slack_action("approve_remediation")).encode()

        response = await signed_client.post("/webhooks/slack", content=body, headers=self._headers(body))

        assert response.status_code == 200
        assert (await signed_client.get("/api/v1/incidents/P1")).json()["current_stage"] == "RESOLVED"
        collaborators.execution.run.assert_awaited_once()

    async def test_unsigned_approval_is_refused(self, signed_client, collaborators):
        await _park_for_approval(signed_client)

        response = await signed_client.post("/webhooks/slack", data=_slack_action("approve_remediation"))

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_SIGNATURE"
        assert (await signed_client.get("/api/v1/incidents/P1")).json()["pending_approval"] is True
        collaborators.execution.run.assert_not_awaited()

    async def test_wrong_secret_is_refused(self, signed_client):
        body = urlencode(_slack_action("approve_remediation")).encode()
        response = await signed_client.post("/webhooks/slack", content=body, headers=self._headers(body, secret="nope"))
        assert response.status_code == 401

    async def test_stale_timestamp_is_refused(self, signed_client):
        body = urlencode(_slack_action("approve_remediation")).encode()
        stale = str(int(time.time()) - 3600)
        response = await signed_client.post("/webhooks/slack", content=body, headers=self._headers(body, timestamp=stale))
        assert response.status_code == 401


@pytest.mark.parametrize("timestamp,signature,now,expected", [
    ("1700000000", None, 1_700_000_000, False),
    ("not-a-number", "v0=abc", 1_700_000_000, False),
    ("1700000000", "sign", 1_700_000_000 + 299, True),
    ("1700000000", "sign", 1_700_000_000 + 301, False),
])
def test_verify_slack_signature(timestamp, signature, now, expected):
    body = b"payload=%7B%7D"
    if signature == "sign":
        base = b"v0:" + timestamp.encode() + b":" + body
        signature = "v0=" + hmac.new(b"k", base, hashlib.sha256).hexdigest()
    assert verify_slack_signature(body, timestamp, signature, "k", max_age_seconds=300, now=now) is expected


def test_slack_verification_skipped_without_secret():
    assert verify_slack_signature(b"", None, None, None) is True


# ── incidents API ────────────────────────────────────────────────────────────


async def test_list_active_incidents(client):
    await client.post("/webhooks/pagerduty", json=_triggered("P2"))
    await client.post("/webhooks/pagerduty", json=_triggered("P1"))

    response = await client.get("/api/v1/incidents")

    assert response.status_code == 200
    assert [i["incident_id"] for i in response.json()] == ["P1", "P2"]
    assert response.json()[0]["stage"] == "INVESTIGATING"


async def test_unknown_incident(client):
    response = await client.get("/api/v1/incidents/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "NOT_FOUND", "detail": "Incident nope not found"}


async def test_submit_hypothesis_directly(client):
    await client.post("/webhooks/pagerduty", json=_triggered())

    response = await client.post("/api/v1/incidents/P1/hypothesis", json={
        "hypothesis": "Pool leak after deploy",
        "confidence": 95,
        "rootCause": "Leaked connections",
        "affectedServices": ["inventory-service"],
        "failureTags": ["database_connection_pool"],
    })

    assert response.status_code == 200
    assert response.json()["current_stage"] == "RESOLVED"
    assert response.json()["root_cause"] == "Leaked connections"


async def test_submit_hypothesis_conflict(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    await client.post("/api/v1/incidents/P1/hypothesis", json={"hypothesis": "h", "confidence": 95})

    response = await client.post("/api/v1/incidents/P1/hypothesis", json={"hypothesis": "h", "confidence": 95})
    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"


async def test_submit_hypothesis_validation(client):
    response = await client.post("/api/v1/incidents/P1/hypothesis", json={"hypothesis": "h", "confidence": 250})
    assert response.status_code == 422


async def test_decide_approval_via_api(client):
    await _park_for_approval(client)

    response = await client.post("/api/v1/incidents/P1/approval", json={"approved": True, "approver": "dana"})

    assert response.status_code == 200
    assert response.json()["current_stage"] == "RESOLVED"


async def test_decide_without_pending_approval(client):
    await client.post("/webhooks/pagerduty", json=_triggered())
    response = await client.post("/api/v1/incidents/P1/approval", json={"approved": True, "approver": "dana"})
    assert response.status_code == 404


async def test_decide_requires_approver(client):
    response = await client.post("/api/v1/incidents/P1/approval", json={"approved": True, "approver": ""})
    assert response.status_code == 422


# ── health and tracing ───────────────────────────────────────────────────────


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_ready(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"orchestrator": "ok", "state_store": "durable"}


async def test_not_ready_before_startup(settings, collaborators):
    app = create_app(settings, collaborators)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        ready = await c.get("/ready")
        incidents = await c.get("/api/v1/incidents")

    assert ready.status_code == 503
    assert incidents.status_code == 503
    assert incidents.json()["error"] == "NOT_READY"


async def test_correlation_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Correlation-ID": "req-42"})
    assert response.headers["X-Correlation-ID"] == "req-42"

    generated = await client.get("/health")
    assert generated.headers["X-Correlation-ID"]
