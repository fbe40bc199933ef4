"""
Incident Learner.

Feeds successful auto-remediations back into the knowledge base, but only
after a stability period. If the same service fails the same way before the
period is over, the earlier resolution is marked ineffective and never
ingested, so a fix that did not hold cannot poison future context.

Learning records live in the `learning` namespace of the state store.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from selfheal.app.core.logging import get_logger
from selfheal.app.services.collaborators import KnowledgeIngestor
from selfheal.app.services.hypothesis_parser import infer_failure_tags
from selfheal.app.services.state_store import StateStore

logger = get_logger(__name__)

LEARNING_NS = "learning"

# Extra hour so a record outlives its stability period long enough to be processed
TTL_BUFFER_SECONDS = 3600
INEFFECTIVE_RETENTION_SECONDS = 24 * 3600
MAX_REASONING_CHARS = 2000

URGENCY_SEVERITY = {"high": "sev1", "low": "sev3"}


class LearningRunResult(BaseModel):
    processed: int = 0
    ingested: int = 0
    skipped_not_ready: int = 0
    skipped_ineffective: int = 0
    errors: List[Dict[str, str]] = []


def infer_failure_types(record: Dict[str, Any]) -> List[str]:
    text = " ".join(
        str(record.get(field) or "")
        for field in ("hypothesis", "root_cause", "recommendation", "title")
    )
    return infer_failure_tags(text)


def urgency_to_severity(urgency: Optional[str]) -> str:
    return URGENCY_SEVERITY.get((urgency or "").lower(), "sev2")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def resolution_time_seconds(record: Dict[str, Any]) -> int:
    triggered = _parse_ts(record.get("triggered_at") or record.get("created_at"))
    resolved = _parse_ts(record.get("resolved_at"))
    if triggered is None or resolved is None:
        return 0
    return round((resolved - triggered).total_seconds())


def build_resolution_document(record: Dict[str, Any]) -> str:
    """Markdown resolution record suitable for runbook search."""
    title = record.get("title") or record["incident_id"]
    auto = "No (required approval)" if record.get("requires_approval") else "Yes"
    lines = [
        "# Incident Resolution Record",
        f"## Incident: {title}",
        "",
        "## Summary",
        f"- **Service:** {record.get('service_name') or 'Unknown'}",
        f"- **Triggered:** {record.get('triggered_at') or record.get('created_at')}",
        f"- **Resolved:** {record.get('resolved_at') or 'Unknown'}",
        f"- **Auto-Resolved:** {auto}",
        "",
    ]

    if record.get("root_cause"):
        lines += ["## Root Cause", record["root_cause"], ""]

    if record.get("hypothesis"):
        lines += ["## Investigation Findings", record["hypothesis"], ""]

    runbooks = record.get("context_results") or []
    if runbooks:
        lines.append("## Runbooks Referenced")
        for rb in runbooks:
            lines.append(f"- {rb.get('title')} (score: {float(rb.get('score') or 0) * 100:.1f}%)")
        lines.append("")

    if record.get("remediation_code"):
        lines += ["## Remediation Applied", "```", record["remediation_code"], "```", ""]

    reasoning = record.get("remediation_reasoning")
    if reasoning:
        lines += ["## Reasoning", reasoning[:MAX_REASONING_CHARS]]
        if len(reasoning) > MAX_REASONING_CHARS:
            lines.append("... [truncated]")
        lines.append("")

    lines += [
        "## Verification",
        f"- Pre-remediation status: {record.get('pre_verification_status') or 'Unknown'}",
        f"- Post-remediation status: {record.get('verification_status') or 'Unknown'}",
    ]
    return "\n".join(lines)


class IncidentLearner:
    def __init__(self, store: StateStore, ingestor: KnowledgeIngestor,
                 stability_period_seconds: int = 24 * 3600):
        self.store = store
        self.ingestor = ingestor
        self.stability_period_seconds = stability_period_seconds

    def _now(self) -> datetime:
        return datetime.fromisoformat(self.store.now_iso())

    async def schedule(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a resolved incident for ingestion once the stability period has passed."""
        now = self._now()
        learning = {
            "incident_id": record["incident_id"],
            "scheduled_at": now.isoformat(),
            "ingest_after": (now + timedelta(seconds=self.stability_period_seconds)).isoformat(),
            "status": "pending",
            "incident_snapshot": record,
        }
        await self.store.put_record(
            LEARNING_NS,
            record["incident_id"],
            learning,
            ttl_seconds=self.stability_period_seconds + TTL_BUFFER_SECONDS,
        )
        logger.info(
            f"Incident {record['incident_id']} scheduled for learning",
            extra={"extra_data": {"ingest_after": learning["ingest_after"]}},
        )
        return learning

    async def check_for_recurrence(self, service: str, failure_tag: str) -> Optional[Dict[str, Any]]:
        """
        Mark a pending resolution of the same service and failure as ineffective.

        Returns the marked learning record, or None if nothing matched.
        """
        for learning in await self.store.scan_records(LEARNING_NS):
            if learning.get("status") != "pending":
                continue
            snapshot = learning.get("incident_snapshot") or {}
            services = [snapshot.get("service_name")] + list(snapshot.get("affected_services") or [])
            if service not in services or failure_tag not in (snapshot.get("failure_tags") or []):
                continue

            learning["status"] = "ineffective"
            learning["recurrence_detected_at"] = self._now().isoformat()
            await self.store.put_record(
                LEARNING_NS, learning["incident_id"], learning, ttl_seconds=INEFFECTIVE_RETENTION_SECONDS
            )
            logger.warning(
                f"Recurrence detected, resolution of {learning['incident_id']} marked ineffective",
                extra={"extra_data": {"service": service, "failure_tag": failure_tag}},
            )
            return learning
        return None

    async def process_pending(self) -> LearningRunResult:
        """Ingest every learning record whose stability period is over."""
        result = LearningRunResult()
        now = self._now()

        for learning in await self.store.scan_records(LEARNING_NS):
            result.processed += 1
            incident_id = learning["incident_id"]

            if learning.get("status") == "ineffective":
                result.skipped_ineffective += 1
                continue

            ingest_after = _parse_ts(learning.get("ingest_after"))
            if ingest_after is not None and now < ingest_after:
                result.skipped_not_ready += 1
                continue

            try:
                await self.ingest(learning["incident_snapshot"])
            except Exception as e:
                result.errors.append({"incident_id": incident_id, "error": str(e)})
                logger.error(f"Failed to ingest incident {incident_id}: {e}")
                continue

            result.ingested += 1
            await self.store.delete_record(LEARNING_NS, incident_id)

        logger.info("Processed pending learning records", extra={"extra_data": result.model_dump()})
        return result

    async def ingest(self, record: Dict[str, Any]) -> Optional[str]:
        affected = list(record.get("affected_services") or [])
        metadata = {
            "title": f"Incident Resolution: {record.get('title') or record['incident_id']}",
            "document_type": "incident_resolution",
            "service": record.get("service_name") or (affected[0] if affected else "unknown"),
            "related_services": affected,
            "failure_types": infer_failure_types(record),
            "severity": urgency_to_severity(record.get("urgency")),
            "incident_id": record["incident_id"],
            "root_cause": record.get("root_cause"),
            "was_auto_resolved": not record.get("requires_approval"),
            "resolution_time_seconds": resolution_time_seconds(record),
        }
        document_id = await self.ingestor.ingest(build_resolution_document(record), metadata)
        logger.info(f"Incident {record['incident_id']} ingested for learning (document {document_id})")
        return document_id
