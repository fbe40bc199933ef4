"""
Edge Case Detector.

Tags risk conditions in a hypothesis, its incident and the retrieved context.
Each condition is an EdgeCaseRule (tag + predicate + whether it forces human
review) so rules can be tested, replaced or extended one at a time.

Detection is heuristic keyword and threshold matching. requires_human is the
OR of every matched rule that forces human review and is independent of the
Confidence Protocol.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from selfheal.app.core.config import Settings
from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ContextResults, ParsedHypothesis, Remediation

logger = get_logger(__name__)


class EdgeCaseTag(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    AMBIGUOUS_ROOT_CAUSE = "ambiguous_root_cause"
    MULTIPLE_FAILURES = "multiple_failures"
    CASCADING_FAILURE = "cascading_failure"
    NOVEL_FAILURE = "novel_failure"
    CONFLICTING_EVIDENCE = "conflicting_evidence"
    HIGH_BLAST_RADIUS = "high_blast_radius"
    DATA_SENSITIVE = "data_sensitive"
    CUSTOMER_FACING_CRITICAL = "customer_facing_critical"


NOVEL_MATCH_SCORE_FLOOR = 0.5
HIGHEST_URGENCY = "high"

HEDGING_MARKERS = ("could be", "might be", "possibly", "or", "alternatively")

CASCADE_PATTERN = re.compile(r"cascad|propagat|domino|chain reaction|downstream|upstream failure")

SENSITIVE_PATTERN = re.compile(
    r"\b(delete|drop|truncate|purge|pii|personal data|user data|credentials?|secrets?|tokens?|passwords?)\b"
)

_NEGATION = r"(?<!don't )(?<!do not )(?<!never )"

# (action, opposite action). Either side asserted by the hypothesis against the
# other side in a runbook counts as a conflict.
CONFLICT_PAIRS: Tuple[Tuple[re.Pattern, re.Pattern], ...] = (
    (re.compile(_NEGATION + r"\brestart"), re.compile(r"\b(don't|do not|never) restart")),
    (re.compile(r"\bscale up\b"), re.compile(r"\bscale down\b")),
    (re.compile(r"\bincrease"), re.compile(r"\bdecrease")),
    (re.compile(r"\benable"), re.compile(r"\bdisable")),
)


@dataclass(frozen=True)
class DetectionInput:
    hypothesis: ParsedHypothesis
    incident: Dict[str, Any]
    context: Optional[ContextResults] = None
    remediation: Optional[Remediation] = None

    @property
    def hypothesis_text(self) -> str:
        return (self.hypothesis.hypothesis or "").lower()

    @property
    def recommendation_text(self) -> str:
        return (self.hypothesis.recommendation or "").lower()

    @property
    def service_name(self) -> str:
        service = self.incident.get("service_name") or self.incident.get("service")
        if not service and self.hypothesis.affected_services:
            service = self.hypothesis.affected_services[0]
        return (service or "").lower()

    @property
    def title(self) -> str:
        return (self.incident.get("title") or "").lower()


@dataclass(frozen=True)
class EdgeCaseRule:
    tag: str
    check: Callable[[DetectionInput], bool]
    forces_human: bool = False

    def matches(self, data: DetectionInput) -> bool:
        return bool(self.check(data))


class EdgeCaseReport(BaseModel):
    tags: List[str]
    requires_human: bool


# ── rule predicates ─────────────────────────────────────────────────────────


def low_confidence_rule(threshold: float) -> EdgeCaseRule:
    return EdgeCaseRule(
        EdgeCaseTag.LOW_CONFIDENCE.value,
        lambda d: (d.hypothesis.confidence or 0) < threshold,
    )


def _count_markers(text: str, markers: Iterable[str]) -> int:
    return sum(1 for m in markers if re.search(rf"\b{re.escape(m)}\b", text))


def ambiguous_root_cause_rule(markers: Sequence[str] = HEDGING_MARKERS, minimum: int = 2) -> EdgeCaseRule:
    return EdgeCaseRule(
        EdgeCaseTag.AMBIGUOUS_ROOT_CAUSE.value,
        lambda d: _count_markers(d.hypothesis_text, markers) >= minimum,
    )


def multiple_failures_rule(limit: int = 2) -> EdgeCaseRule:
    return EdgeCaseRule(
        EdgeCaseTag.MULTIPLE_FAILURES.value,
        lambda d: len(d.hypothesis.affected_services) > limit or len(set(d.hypothesis.failure_tags)) > limit,
    )


def cascading_failure_rule() -> EdgeCaseRule:
    return EdgeCaseRule(
        EdgeCaseTag.CASCADING_FAILURE.value,
        lambda d: bool(CASCADE_PATTERN.search(d.hypothesis_text)),
    )


def _is_novel(d: DetectionInput) -> bool:
    if d.context is None or not d.context.results:
        return True
    return (d.context.max_score or 0) < NOVEL_MATCH_SCORE_FLOOR


def novel_failure_rule() -> EdgeCaseRule:
    return EdgeCaseRule(EdgeCaseTag.NOVEL_FAILURE.value, _is_novel, forces_human=True)


def _asserts_against(claim: str, runbook: str) -> bool:
    for action, opposite in CONFLICT_PAIRS:
        if action.search(claim) and opposite.search(runbook):
            return True
        if opposite.search(claim) and action.search(runbook):
            return True
    return False


def _has_conflict(d: DetectionInput) -> bool:
    if d.context is None or not d.context.results:
        return False
    claims = [t for t in (d.hypothesis_text, d.recommendation_text) if t]
    for item in d.context.results:
        runbook = (item.content or "").lower()
        if any(_asserts_against(claim, runbook) for claim in claims):
            return True
    return False


def conflicting_evidence_rule() -> EdgeCaseRule:
    return EdgeCaseRule(EdgeCaseTag.CONFLICTING_EVIDENCE.value, _has_conflict, forces_human=True)


def high_blast_radius_rule(critical_services: Sequence[str]) -> EdgeCaseRule:
    critical = [s.lower() for s in critical_services]

    def check(d: DetectionInput) -> bool:
        if str(d.incident.get("urgency") or "").lower() == HIGHEST_URGENCY:
            return True
        service = d.service_name
        return bool(service) and any(c in service for c in critical)

    return EdgeCaseRule(EdgeCaseTag.HIGH_BLAST_RADIUS.value, check, forces_human=True)


def data_sensitive_rule() -> EdgeCaseRule:
    def check(d: DetectionInput) -> bool:
        parts = [d.hypothesis_text, d.recommendation_text, (d.hypothesis.root_cause or "").lower()]
        if d.remediation is not None:
            parts.append((d.remediation.code or "").lower())
        return any(SENSITIVE_PATTERN.search(p) for p in parts if p)

    return EdgeCaseRule(EdgeCaseTag.DATA_SENSITIVE.value, check, forces_human=True)


def customer_facing_rule(keywords: Sequence[str]) -> EdgeCaseRule:
    words = [k.lower() for k in keywords]
    return EdgeCaseRule(
        EdgeCaseTag.CUSTOMER_FACING_CRITICAL.value,
        lambda d: any(k in d.title or k in d.service_name for k in words),
    )


def default_rules(
    low_confidence_threshold: float = 60.0,
    critical_services: Sequence[str] = ("payment", "auth", "checkout", "api-gateway", "database"),
    customer_facing_keywords: Sequence[str] = ("checkout", "payment", "login", "signup", "cart", "order"),
) -> List[EdgeCaseRule]:
    return [
        low_confidence_rule(low_confidence_threshold),
        ambiguous_root_cause_rule(),
        multiple_failures_rule(),
        cascading_failure_rule(),
        novel_failure_rule(),
        conflicting_evidence_rule(),
        high_blast_radius_rule(critical_services),
        data_sensitive_rule(),
        customer_facing_rule(customer_facing_keywords),
    ]


class EdgeCaseDetector:
    def __init__(self, rules: Optional[Sequence[EdgeCaseRule]] = None):
        self.rules = list(rules) if rules is not None else default_rules()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EdgeCaseDetector":
        return cls(default_rules(
            low_confidence_threshold=settings.low_confidence_threshold,
            critical_services=settings.critical_services,
            customer_facing_keywords=settings.customer_facing_keywords,
        ))

    def detect(
        self,
        hypothesis: ParsedHypothesis,
        incident_context: Dict[str, Any],
        context_results: Optional[ContextResults],
        remediation: Optional[Remediation] = None,
    ) -> EdgeCaseReport:
        data = DetectionInput(hypothesis, incident_context or {}, context_results, remediation)
        tags: List[str] = []
        requires_human = False

        for rule in self.rules:
            try:
                matched = rule.matches(data)
            except Exception as e:
                # A broken forcing rule must not let an incident through unreviewed
                logger.warning(f"Edge case rule {rule.tag} failed: {e}")
                matched = rule.forces_human
            if matched:
                if rule.tag not in tags:
                    tags.append(rule.tag)
                requires_human = requires_human or rule.forces_human

        logger.debug(
            "Edge case detection complete",
            extra={"extra_data": {"edge_cases": tags, "requires_human": requires_human}},
        )
        return EdgeCaseReport(tags=tags, requires_human=requires_human)
