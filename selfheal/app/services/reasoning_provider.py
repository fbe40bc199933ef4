"""
LLM-backed reasoning provider.

Builds a remediation prompt from the incident, hypothesis, retrieved runbooks
and the edge cases detected so far, then reads a JSON remediation back out of
the model's answer.
"""
import json
import re
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ContextResults, ParsedHypothesis, Remediation
from selfheal.app.services.edge_cases import EdgeCaseTag
from selfheal.app.services.llm_adapter import LLMAdapter

logger = get_logger(__name__)

MAX_RUNBOOK_CHARS = 4000

SYSTEM_PROMPT = """You are a senior site reliability engineer writing a remediation for a live production incident.
Prefer the smallest reversible change that addresses the root cause. Never delete data.
If you are unsure, say so: lower your confidence and set requiresApproval to true."""

OUTPUT_INSTRUCTIONS = """## Output format
Respond with a single JSON object and nothing else:
{
  "code": "<executable remediation script, or null if no safe fix exists>",
  "language": "python" | "bash",
  "reasoning": "<step by step analysis that led to this fix>",
  "risk": "LOW" | "MEDIUM" | "HIGH",
  "confidence": <0-100>,
  "requiresApproval": <true|false>,
  "edgeCases": ["<tags of conditions a human should know about>"]
}"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

LOW_CONFIDENCE_PREFIX = (
    "> The investigation behind this incident is low confidence. Prefer diagnostic steps "
    "over changes and set requiresApproval to true unless the fix is trivially reversible."
)

# Extra instructions appended to the prompt per detected edge case tag
EDGE_CASE_GUIDANCE: Dict[str, str] = {
    EdgeCaseTag.AMBIGUOUS_ROOT_CAUSE.value: """## Differential Diagnosis
The root cause is not settled. List the most likely causes with the evidence for and
against each, and the commands that would tell them apart. Only write a fix if one cause
is clearly the most likely.""",
    EdgeCaseTag.MULTIPLE_FAILURES.value: """## Failure Prioritization
Several failures are reported. Order them by severity, name the primary failure and say
whether the others depend on it. Remediate the primary failure only.""",
    EdgeCaseTag.CASCADING_FAILURE.value: """## Cascade Analysis
This looks like a cascading failure. Trace the propagation chain to its origin, say whether
it is still spreading, and prefer breaking the chain over restarting downstream services.""",
    EdgeCaseTag.NOVEL_FAILURE.value: """## Novel Failure
No runbook matches this failure. State that it is novel, keep the fix minimal and easy to
roll back, and recommend human review before execution.""",
    EdgeCaseTag.CONFLICTING_EVIDENCE.value: """## Conflicting Guidance
The hypothesis and the runbooks recommend opposite actions. Name the conflict, say which
source you trust here and why, and require human approval.""",
    EdgeCaseTag.HIGH_BLAST_RADIUS.value: """## Elevated Risk Review
The affected service is critical or the incident is at the highest urgency. Rate risk
conservatively and describe the rollback path in your reasoning.""",
}


def build_prompt(
    hypothesis: ParsedHypothesis,
    context: ContextResults,
    incident: Dict[str, Any],
    edge_cases: Sequence[str] = (),
) -> str:
    lines = [LOW_CONFIDENCE_PREFIX, ""] if EdgeCaseTag.LOW_CONFIDENCE.value in edge_cases else []
    lines += [
        "# Incident Remediation Request",
        "",
        "## Current Incident",
        f"- **Incident ID:** {incident.get('incident_id', 'Unknown')}",
        f"- **Title:** {incident.get('title') or 'Unknown'}",
        f"- **Service:** {incident.get('service_name') or 'Unknown'}",
        f"- **Urgency:** {incident.get('urgency') or 'Unknown'}",
        "",
        "## Investigation Hypothesis",
        hypothesis.hypothesis or "_No analysis provided_",
    ]
    if hypothesis.root_cause:
        lines.append(f"**Root Cause:** {hypothesis.root_cause}")
    if hypothesis.affected_services:
        lines.append(f"**Affected Services:** {', '.join(hypothesis.affected_services)}")
    if hypothesis.recommendation:
        lines.append(f"**Recommended Action:** {hypothesis.recommendation}")
    lines.append(f"**Investigation Confidence:** {hypothesis.confidence:.0f}%")

    runbooks = context.format_for_prompt()
    if len(runbooks) > MAX_RUNBOOK_CHARS:
        runbooks = runbooks[:MAX_RUNBOOK_CHARS] + "\n\n_[Truncated]_"
    lines += ["", "## Relevant Runbooks", runbooks]
    for tag in edge_cases:
        if tag in EDGE_CASE_GUIDANCE:
            lines += ["", EDGE_CASE_GUIDANCE[tag]]
    lines += ["", OUTPUT_INSTRUCTIONS]
    return "\n".join(lines)


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model answer, fenced or bare."""
    if not text:
        return None
    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


class LLMReasoningProvider:
    def __init__(self, adapter: LLMAdapter):
        self.adapter = adapter

    async def synthesize(
        self,
        hypothesis: ParsedHypothesis,
        context: ContextResults,
        incident: Dict[str, Any],
        edge_cases: Sequence[str] = (),
    ) -> Optional[Remediation]:
        prompt = build_prompt(hypothesis, context, incident, edge_cases)
        response = await self.adapter.generate(prompt, system_prompt=SYSTEM_PROMPT)
        logger.info(
            "Remediation synthesized",
            extra={"extra_data": {"model": response.model_version, "prompt_hash": response.prompt_hash}},
        )

        data = extract_json(response.text)
        if data is None:
            logger.warning("Model answer contained no JSON remediation")
            return Remediation(reasoning=response.text, requires_approval=True)

        try:
            return Remediation.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Model returned a malformed remediation: {e}")
            return Remediation(reasoning=response.text, requires_approval=True)
