"""
Parser for investigation notes posted on incidents by the investigation agent.

Notes are semi-structured text ("Root Cause: ...", "Confidence: 85%", ...).
Anything not stated explicitly is left empty; failure tags fall back to keyword
inference over the note.
"""
import re
from typing import Any, Dict, List, Optional

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ParsedHypothesis

logger = get_logger(__name__)

NOTE_MARKERS = ("investigation", "root cause analysis", "hypothesis:")

FAILURE_TYPE_PATTERNS = {
    "slow_query": re.compile(r"slow.?query|query.?lock|sql.?timeout"),
    "database_deadlock": re.compile(r"deadlock|lock.?wait|blocking.?query"),
    "memory_exhaustion": re.compile(r"out.?of.?memory|\boom\b|memory.?exhausted"),
    "cpu_saturation": re.compile(r"cpu.?saturat|high.?cpu|cpu.?spike"),
    "memory_leak": re.compile(r"memory.?leak|growing.?heap"),
    "dependency_timeout": re.compile(r"timeout|connection.?refused|upstream"),
    "circuit_breaker_open": re.compile(r"circuit.?breaker|circuit.?open"),
    "database_connection_pool": re.compile(r"connection.?pool|pool.?exhausted"),
}

_CONFIDENCE = re.compile(r"confidence(?:\s*score)?:\s*(\d+(?:\.\d+)?)\s*(%)?", re.IGNORECASE)
_ROOT_CAUSE = re.compile(r"^\s*(?:root cause|cause):\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_HYPOTHESIS = re.compile(r"^\s*(?:hypothesis|analysis):\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_RECOMMENDATION = re.compile(r"^\s*(?:recommendation|suggested action):\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_SERVICES = re.compile(r"^\s*(?:affected services|services):\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_FAILURE_TYPES = re.compile(r"^\s*(?:failure types?|tags):\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def infer_failure_tags(text: str) -> List[str]:
    lowered = (text or "").lower()
    return [name for name, pattern in FAILURE_TYPE_PATTERNS.items() if pattern.search(lowered)]


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _first(pattern: re.Pattern, content: str) -> Optional[str]:
    match = pattern.search(content)
    return match.group(1).strip() if match else None


class NoteHypothesisParser:
    def is_hypothesis_note(self, note: Dict[str, Any]) -> bool:
        content = (note or {}).get("content") or ""
        lowered = content.lower()
        return any(marker in lowered for marker in NOTE_MARKERS)

    def parse(self, content: str) -> Optional[ParsedHypothesis]:
        """Returns None when the note states neither a root cause nor a hypothesis."""
        if not content:
            return None

        root_cause = _first(_ROOT_CAUSE, content)
        hypothesis = _first(_HYPOTHESIS, content) or root_cause
        if not hypothesis:
            logger.debug("Note has no root cause or hypothesis")
            return None

        confidence = 0.0
        match = _CONFIDENCE.search(content)
        if match:
            confidence = float(match.group(1))
            # "Confidence: 0.85" is a fraction, "Confidence: 85%" a percentage
            if confidence <= 1 and not match.group(2):
                confidence *= 100
            confidence = min(confidence, 100.0)

        services = _first(_SERVICES, content)
        explicit_tags = _first(_FAILURE_TYPES, content)
        return ParsedHypothesis(
            hypothesis=hypothesis,
            confidence=confidence,
            root_cause=root_cause,
            affected_services=_split(services) if services else [],
            failure_tags=_split(explicit_tags) if explicit_tags else infer_failure_tags(content),
            recommendation=_first(_RECOMMENDATION, content),
        )

    def build_query(self, hypothesis: ParsedHypothesis) -> str:
        parts = []
        if hypothesis.root_cause:
            parts.append(hypothesis.root_cause)
        if hypothesis.affected_services:
            parts.append(" ".join(hypothesis.affected_services))
        if not parts:
            return hypothesis.hypothesis
        return " ".join(parts)
