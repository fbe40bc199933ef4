"""
Incident Stage Schemas and Transition Table.

The stage graph here is the single source of truth for which transitions the
state store accepts. Escalation is reachable from every non-terminal stage.
"""
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class IncidentStage(str, Enum):
    """Incident remediation stages. RESOLVED and ESCALATED are terminal."""
    TRIGGERED = "TRIGGERED"
    INVESTIGATING = "INVESTIGATING"
    HYPOTHESIS_RECEIVED = "HYPOTHESIS_RECEIVED"
    CONTEXT_RETRIEVED = "CONTEXT_RETRIEVED"
    SYNTHESIZING = "SYNTHESIZING"
    EXECUTING = "EXECUTING"
    VERIFYING = "VERIFYING"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class RemediationRisk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    UNKNOWN = "UNKNOWN"


INITIAL_STAGE = IncidentStage.TRIGGERED

TERMINAL_STAGES = frozenset({IncidentStage.RESOLVED, IncidentStage.ESCALATED})

# Forward edges. ESCALATED is added for every non-terminal stage below.
_FORWARD_EDGES: Dict[IncidentStage, frozenset] = {
    IncidentStage.TRIGGERED: frozenset({IncidentStage.INVESTIGATING}),
    IncidentStage.INVESTIGATING: frozenset({IncidentStage.HYPOTHESIS_RECEIVED}),
    IncidentStage.HYPOTHESIS_RECEIVED: frozenset({IncidentStage.CONTEXT_RETRIEVED}),
    IncidentStage.CONTEXT_RETRIEVED: frozenset({IncidentStage.SYNTHESIZING}),
    # EXECUTING is entered either directly (auto-execute) or after human approval
    IncidentStage.SYNTHESIZING: frozenset({IncidentStage.EXECUTING}),
    # RESOLVED directly from EXECUTING means the pre-flight probe found it self-healed
    IncidentStage.EXECUTING: frozenset({IncidentStage.VERIFYING, IncidentStage.RESOLVED}),
    IncidentStage.VERIFYING: frozenset({IncidentStage.RESOLVED}),
}

ALLOWED_TRANSITIONS: Dict[IncidentStage, frozenset] = {
    stage: (_FORWARD_EDGES.get(stage, frozenset()) | {IncidentStage.ESCALATED})
    if stage not in TERMINAL_STAGES else frozenset()
    for stage in IncidentStage
}


def is_terminal(stage: str) -> bool:
    return IncidentStage(stage) in TERMINAL_STAGES


def is_legal_transition(from_stage: str, to_stage: str) -> bool:
    """True when `from_stage -> to_stage` is an edge of the stage graph."""
    try:
        return IncidentStage(to_stage) in ALLOWED_TRANSITIONS[IncidentStage(from_stage)]
    except ValueError:
        return False


class StageTransition(BaseModel):
    """One entry of an incident's append-only stage history."""
    model_config = ConfigDict(populate_by_name=True)

    from_stage: IncidentStage = Field(alias="from")
    to_stage: IncidentStage = Field(alias="to")
    timestamp: datetime


class IncidentSummary(BaseModel):
    """Compact view returned by the active incidents listing."""
    incident_id: str
    title: Optional[str] = None
    stage: IncidentStage
    service: Optional[str] = None
    pending_approval: bool = False
    updated_at: Optional[datetime] = None


class IncidentResponse(BaseModel):
    """Full incident record. Unknown fields pass through untouched."""
    model_config = ConfigDict(extra="allow")

    incident_id: str
    current_stage: IncidentStage
    title: Optional[str] = None
    service_name: Optional[str] = None
    urgency: Optional[str] = None
    hypothesis: Optional[str] = None
    root_cause: Optional[str] = None
    affected_services: List[str] = []
    recommendation: Optional[str] = None
    confidence: Optional[float] = None
    context_match_score: Optional[float] = None
    remediation_confidence: Optional[float] = None
    remediation_risk: Optional[RemediationRisk] = None
    remediation_code: Optional[str] = None
    remediation_reasoning: Optional[str] = None
    edge_cases: List[str] = []
    requires_approval: bool = False
    execution_result: Optional[Dict[str, Any]] = None
    verification_result: Optional[Dict[str, Any]] = None
    stage_history: List[StageTransition] = []
    created_at: datetime
    updated_at: datetime


class TriggerRequest(BaseModel):
    """A newly triggered incident, as handed over by the webhook layer."""
    incident_id: str = Field(min_length=1)
    title: Optional[str] = None
    urgency: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    health_check_url: Optional[str] = None
    alert_payload: Optional[Dict[str, Any]] = None


class ApprovalDecision(BaseModel):
    """Request body for the human decision endpoint."""
    approved: bool
    approver: str = Field(min_length=1)
