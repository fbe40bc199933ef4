"""
Confidence Protocol.

Deterministic gate deciding whether a synthesized remediation may run without
a human. Rules are checked in order and the first one that blocks is reported.
"""
from typing import Iterable, Optional
from pydantic import BaseModel

from selfheal.app.core.config import Settings
from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.incidents import RemediationRisk

logger = get_logger(__name__)

# Fixed floor, not configurable
REMEDIATION_CONFIDENCE_FLOOR = 70.0

CRITICAL_EDGE_CASES = frozenset({
    "novel_failure",
    "conflicting_evidence",
    "data_sensitive",
    "high_blast_radius",
})


def _normalise_risk(risk) -> RemediationRisk:
    value = getattr(risk, "value", risk)
    try:
        return RemediationRisk(str(value).upper())
    except ValueError:
        return RemediationRisk.UNKNOWN


class ConfidenceDecision(BaseModel):
    auto_execute: bool
    reason: str


class ConfidenceEvaluator:
    def __init__(self, hypothesis_threshold: float = 90.0, context_threshold: float = 85.0):
        self.hypothesis_threshold = hypothesis_threshold
        self.context_threshold = context_threshold

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfidenceEvaluator":
        return cls(
            hypothesis_threshold=settings.hypothesis_confidence_threshold,
            context_threshold=settings.context_match_threshold,
        )

    def decide(
        self,
        hypothesis_confidence: Optional[float],
        context_match_score: Optional[float],
        remediation_confidence: Optional[float],
        risk: Optional[str],
        edge_cases: Iterable[str] = (),
    ) -> ConfidenceDecision:
        """Evaluate the gate and say which rule decided it. Missing scores count as 0."""
        if _normalise_risk(risk) == RemediationRisk.HIGH:
            return ConfidenceDecision(auto_execute=False, reason="risk_high")

        if (hypothesis_confidence or 0) < self.hypothesis_threshold:
            return ConfidenceDecision(
                auto_execute=False,
                reason=f"hypothesis_confidence_below_threshold ({hypothesis_confidence} < {self.hypothesis_threshold})",
            )

        if (context_match_score or 0) < self.context_threshold:
            return ConfidenceDecision(
                auto_execute=False,
                reason=f"context_match_below_threshold ({context_match_score} < {self.context_threshold})",
            )

        if (remediation_confidence or 0) < REMEDIATION_CONFIDENCE_FLOOR:
            return ConfidenceDecision(
                auto_execute=False,
                reason=f"remediation_confidence_too_low ({remediation_confidence} < {REMEDIATION_CONFIDENCE_FLOOR})",
            )

        critical = sorted(CRITICAL_EDGE_CASES.intersection(edge_cases))
        if critical:
            return ConfidenceDecision(auto_execute=False, reason=f"critical_edge_cases ({', '.join(critical)})")

        return ConfidenceDecision(auto_execute=True, reason="all_checks_passed")

    def evaluate(
        self,
        hypothesis_confidence: Optional[float],
        context_match_score: Optional[float],
        remediation_confidence: Optional[float],
        risk: Optional[str],
        edge_cases: Iterable[str] = (),
    ) -> bool:
        """Returns True if safe to auto-execute."""
        decision = self.decide(hypothesis_confidence, context_match_score, remediation_confidence, risk, edge_cases)
        logger.debug(f"Confidence Protocol: auto_execute={decision.auto_execute} reason={decision.reason}")
        return decision.auto_execute
