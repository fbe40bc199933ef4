"""
Payload contracts exchanged with external collaborators.

Collaborators speak camelCase JSON; the models accept either spelling and dump
snake_case for storage.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from selfheal.app.schemas.incidents import RemediationRisk


class CollaboratorModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ParsedHypothesis(CollaboratorModel):
    """Investigation output from the hypothesis parser."""
    hypothesis: str = ""
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    root_cause: Optional[str] = None
    affected_services: List[str] = []
    failure_tags: List[str] = []
    recommendation: Optional[str] = None


class ContextResult(CollaboratorModel):
    """One retrieved runbook or knowledge-base item."""
    title: str = ""
    content: str = ""
    score: float = Field(0.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = {}


class ContextResults(CollaboratorModel):
    results: List[ContextResult] = []
    max_score: Optional[float] = Field(None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _derive_max_score(self) -> "ContextResults":
        if self.max_score is None:
            self.max_score = max((r.score for r in self.results), default=0.0)
        return self

    def format_for_prompt(self) -> str:
        """Render the results as markdown sections for a reasoning prompt."""
        if not self.results:
            return "No relevant runbooks found."
        sections = []
        for i, r in enumerate(self.results, start=1):
            sections.append(f"### Runbook {i}: {r.title} (relevance {r.score * 100:.0f}%)\n{r.content}")
        return "\n\n".join(sections)


class Remediation(CollaboratorModel):
    """Candidate fix produced by the reasoning provider."""
    code: Optional[str] = None
    language: str = "python"
    reasoning: Optional[str] = None
    risk: RemediationRisk = RemediationRisk.UNKNOWN
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    requires_approval: bool = False
    edge_cases: List[str] = []

    @model_validator(mode="before")
    @classmethod
    def _normalise_risk(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("risk"), str):
            data = {**data, "risk": data["risk"].upper()}
        return data


class ExecutionResult(CollaboratorModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class VerificationResult(CollaboratorModel):
    success: bool
    summary: Dict[str, Any] = {}


class Sandbox(CollaboratorModel):
    """Handle to an acquired execution environment."""
    sandbox_id: str
    name: str


class HealthTarget(CollaboratorModel):
    """What a pre-flight probe or verification run should look at."""
    incident_id: str
    service_name: Optional[str] = None
    health_check_url: Optional[str] = None


class ApprovalRequest(CollaboratorModel):
    """Message sent to the human approval channel."""
    incident_id: str
    title: Optional[str] = None
    hypothesis: Optional[str] = None
    risk: RemediationRisk = RemediationRisk.UNKNOWN
    code: str
    reasoning: Optional[str] = None
    service: Optional[str] = None


class ApprovalSnapshot(BaseModel):
    """Everything needed to resume execution once a human approves."""
    remediation_code: str
    language: str = "python"
    hypothesis: Optional[str] = None
    risk: RemediationRisk = RemediationRisk.UNKNOWN
    reasoning: Optional[str] = None


class HypothesisSubmission(ParsedHypothesis):
    """A hypothesis posted directly to the API instead of arriving as an incident note."""
    query: Optional[str] = None
    title: Optional[str] = None
    service_name: Optional[str] = None

    def to_hypothesis(self) -> ParsedHypothesis:
        return ParsedHypothesis.model_validate(self.model_dump(exclude={"query", "title", "service_name"}))
