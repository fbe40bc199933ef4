"""
Incident API Router.

Read access to incident state plus the two human entry points: submitting an
investigation hypothesis directly and deciding on a pending approval.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends

from selfheal.app.api.deps import get_orchestrator
from selfheal.app.schemas.collaborators import HypothesisSubmission
from selfheal.app.schemas.incidents import ApprovalDecision, IncidentResponse, IncidentSummary
from selfheal.app.services.orchestrator import IncidentOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=List[IncidentSummary])
async def list_active_incidents(orchestrator: IncidentOrchestrator = Depends(get_orchestrator)):
    """Incidents that are neither resolved nor escalated."""
    return await orchestrator.list_active_summaries()


@router.get("/{incident_id}", response_model=IncidentResponse)
async def get_incident(incident_id: str, orchestrator: IncidentOrchestrator = Depends(get_orchestrator)):
    record = await orchestrator.get_incident(incident_id)
    return IncidentResponse.model_validate(record)


@router.post("/{incident_id}/hypothesis", response_model=IncidentResponse)
async def submit_hypothesis(
    incident_id: str,
    submission: HypothesisSubmission,
    orchestrator: IncidentOrchestrator = Depends(get_orchestrator),
):
    """
    Run the remediation pipeline for a hypothesis and return the resulting
    record. The incident must be INVESTIGATING (or unknown, in which case it is
    created); otherwise 409.
    """
    fields = {k: v for k, v in {"title": submission.title, "service_name": submission.service_name}.items() if v}
    record = await orchestrator.receive_hypothesis(
        incident_id,
        submission.to_hypothesis(),
        query=submission.query,
        fields=fields,
    )
    return IncidentResponse.model_validate(record)


@router.post("/{incident_id}/approval", response_model=IncidentResponse)
async def decide_approval(
    incident_id: str,
    decision: ApprovalDecision,
    orchestrator: IncidentOrchestrator = Depends(get_orchestrator),
):
    """Approve or reject the pending remediation. 404 when nothing is pending."""
    logger.info(f"Approval decision for {incident_id}: approved={decision.approved} by {decision.approver}")
    record = await orchestrator.gateway.resolve_approval(incident_id, decision.approved, decision.approver)
    return IncidentResponse.model_validate(record)
