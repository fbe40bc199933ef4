"""
Integration tests for the approval handshake and expiry sweep.
"""
import pytest

from conftest import make_hypothesis
from selfheal.app.core.errors import ConflictError, NotFoundError
from selfheal.app.schemas.collaborators import ApprovalSnapshot
from selfheal.app.schemas.incidents import TriggerRequest
from selfheal.app.services.orchestrator import IncidentOrchestrator


async def _park_for_approval(orchestrator, incident_id="P1"):
    await orchestrator.handle_trigger(TriggerRequest(
        incident_id=incident_id, title="Inventory API latency", service_name="inventory-service"
    ))
    return await orchestrator.receive_hypothesis(incident_id, make_hypothesis(confidence=75))


async def test_pending_record_holds_snapshot(orchestrator):
    await _park_for_approval(orchestrator)

    pending = await orchestrator.gateway.get_pending("P1")
    assert pending["remediation_code"] == "print('pool recycled')"
    assert pending["risk"] == "LOW"
    assert pending["hypothesis"].startswith("Connection pool exhausted")
    assert pending["requested_at"] == "2023-11-14T22:13:20+00:00"


async def test_second_request_conflicts(orchestrator, collaborators):
    await _park_for_approval(orchestrator)

    with pytest.raises(ConflictError):
        await orchestrator.gateway.request_approval("P1", ApprovalSnapshot(remediation_code="echo again"))
    assert collaborators.approval.request_approval.await_count == 1


async def test_decision_without_pending_approval(orchestrator):
    await orchestrator.handle_trigger(TriggerRequest(incident_id="P1"))
    with pytest.raises(NotFoundError):
        await orchestrator.gateway.resolve_approval("P1", approved=True, approver="alice")


async def test_decision_is_applied_once(orchestrator, collaborators):
    await _park_for_approval(orchestrator)
    await orchestrator.gateway.resolve_approval("P1", approved=True, approver="alice")

    with pytest.raises(NotFoundError):
        await orchestrator.gateway.resolve_approval("P1", approved=False, approver="bob")
    collaborators.execution.run.assert_awaited_once()
    assert (await orchestrator.store.get("P1"))["current_stage"] == "RESOLVED"


async def test_decision_after_expiry_is_rejected(orchestrator, clock, collaborators):
    await _park_for_approval(orchestrator)
    clock.advance(orchestrator.store.approval_ttl_seconds + 1)

    with pytest.raises(NotFoundError):
        await orchestrator.gateway.resolve_approval("P1", approved=True, approver="alice")
    collaborators.execution.acquire.assert_not_awaited()


async def test_sweep_ignores_live_approvals(orchestrator):
    await _park_for_approval(orchestrator)
    assert await orchestrator.gateway.sweep_expired() == []


async def test_sweep_records_expiry_by_default(orchestrator, clock):
    await _park_for_approval(orchestrator)
    clock.advance(orchestrator.store.approval_ttl_seconds + 1)

    assert await orchestrator.gateway.sweep_expired() == ["P1"]

    record = await orchestrator.store.get("P1")
    assert record["current_stage"] == "SYNTHESIZING"
    assert record["pending_approval"] is False
    assert record["approval_expired_at"]
    assert await orchestrator.gateway.sweep_expired() == []


async def test_sweep_escalates_when_configured(sql_store, collaborators, settings, clock):
    orchestrator = IncidentOrchestrator(
        sql_store, collaborators, settings.model_copy(update={"escalate_on_approval_timeout": True})
    )
    await _park_for_approval(orchestrator)
    clock.advance(orchestrator.store.approval_ttl_seconds + 1)

    assert await orchestrator.gateway.sweep_expired() == ["P1"]

    record = await orchestrator.store.get("P1")
    assert record["current_stage"] == "ESCALATED"
    assert record["error_stage"] == "approval_timeout"
    assert record["pending_approval"] is False
