"""
Inbound webhooks.

PagerDuty (v3 webhooks) drives the incident lifecycle; Slack interactive
messages carry the human approval decision. Anything that may call slow
collaborators runs as a background task so the sender gets its 2xx quickly.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from selfheal.app.api.deps import get_app_settings, get_orchestrator
from selfheal.app.core.config import Settings
from selfheal.app.core.errors import AppError, ValidationError
from selfheal.app.schemas.collaborators import ParsedHypothesis
from selfheal.app.schemas.incidents import TriggerRequest
from selfheal.app.services.orchestrator import IncidentOrchestrator
from selfheal.app.services.slack_notifier import APPROVE_ACTION, REJECT_ACTION

logger = logging.getLogger(__name__)
router = APIRouter()

SIGNATURE_HEADER = "X-PagerDuty-Signature"
SLACK_SIGNATURE_HEADER = "X-Slack-Signature"
SLACK_TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"

INCIDENT_EVENTS = frozenset({
    "incident.triggered",
    "incident.acknowledged",
    "incident.escalated",
    "incident.resolved",
})


def verify_pagerduty_signature(body: bytes, header: Optional[str], secret: Optional[str]) -> bool:
    """
    Check an HMAC-SHA256 `v1=<hex>` signature. The header may list several
    comma-separated signatures during secret rotation; any match is accepted.
    Without a configured secret verification is skipped.
    """
    if not secret:
        logger.warning("PagerDuty webhook secret not configured, skipping signature verification")
        return True
    if not header:
        return False

    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    for candidate in header.split(","):
        candidate = candidate.strip()
        if candidate.startswith("v1=") and hmac.compare_digest(candidate[3:], expected):
            return True
    return False


def verify_slack_signature(body: bytes, timestamp: Optional[str], signature: Optional[str],
                           secret: Optional[str], max_age_seconds: int = 300,
                           now: Optional[float] = None) -> bool:
    """
    Check Slack's `v0=<hex>` HMAC-SHA256 over `v0:<timestamp>:<body>`.

    Requests whose timestamp is more than `max_age_seconds` away from now are
    refused. Without a configured secret verification is skipped.
    """
    if not secret:
        logger.warning("Slack signing secret not configured, skipping signature verification")
        return True
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    if abs((now if now is not None else time.time()) - sent_at) > max_age_seconds:
        return False

    base = b"v0:" + timestamp.encode() + b":" + body
    expected = "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


async def _run_hypothesis(orchestrator: IncidentOrchestrator, incident_id: str, hypothesis: ParsedHypothesis,
                          query: str, fields: Dict[str, Any]) -> None:
    try:
        await orchestrator.receive_hypothesis(incident_id, hypothesis, query=query, fields=fields)
    except AppError as e:
        logger.warning(f"Hypothesis for {incident_id} not processed: {e.message}")
    except Exception:
        logger.exception(f"Hypothesis pipeline failed for {incident_id}")


async def _resolve_approval(orchestrator: IncidentOrchestrator, incident_id: str, approved: bool,
                            approver: str) -> None:
    try:
        await orchestrator.gateway.resolve_approval(incident_id, approved, approver)
    except AppError as e:
        logger.warning(f"Approval decision for {incident_id} not applied: {e.message}")
    except Exception:
        logger.exception(f"Approval handling failed for {incident_id}")


def _annotation(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[Dict[str, Any]], Dict[str, Any]]:
    """
    Return (incident_id, latest note, incident fields) for an annotation event.

    Handles both the v3 shape (`data.incident` + `data.content`) and the older
    shape where the incident carries its `notes` list.
    """
    if "incident" in data and "content" in data:
        incident = data.get("incident") or {}
        return incident.get("id"), {"content": data.get("content")}, {"title": incident.get("summary")}

    notes = data.get("notes") or []
    note = notes[-1] if notes else None
    return data.get("id"), note, {"title": data.get("title") or data.get("summary")}


@router.post("/pagerduty")
async def pagerduty_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    orchestrator: IncidentOrchestrator = Depends(get_orchestrator),
):
    body = await request.body()
    if not verify_pagerduty_signature(body, request.headers.get(SIGNATURE_HEADER), settings.pagerduty_webhook_secret):
        logger.warning("Invalid PagerDuty webhook signature")
        return JSONResponse(status_code=401, content={"error": "INVALID_SIGNATURE", "detail": "Invalid signature"})

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise ValidationError("Webhook body is not valid JSON")

    event = payload.get("event") if isinstance(payload, dict) else None
    if not isinstance(event, dict) or not event.get("event_type"):
        raise ValidationError("Invalid webhook payload: missing event.event_type")

    event_type = event["event_type"]
    data = event.get("data") or {}
    logger.info(
        f"PagerDuty webhook received: {event_type}",
        extra={"extra_data": {"event_type": event_type, "pd_incident_id": data.get("id")}},
    )

    if event_type in INCIDENT_EVENTS and not data.get("id"):
        raise ValidationError(f"{event_type} event without an incident id")

    if event_type == "incident.triggered":
        service = data.get("service") or {}
        await orchestrator.handle_trigger(TriggerRequest(
            incident_id=data["id"],
            title=data.get("title") or data.get("summary"),
            urgency=data.get("urgency"),
            service_id=service.get("id"),
            service_name=service.get("summary"),
            alert_payload=payload,
        ))

    elif event_type == "incident.annotated":
        incident_id, note, fields = _annotation(data)
        parser = orchestrator.collaborators.parser
        if not incident_id or not note:
            logger.debug("Annotation event without incident or note")
        elif parser is None:
            logger.warning("No hypothesis parser configured, annotation ignored")
        elif not parser.is_hypothesis_note(note):
            logger.debug(f"Note on {incident_id} is not an investigation note, ignoring")
        else:
            hypothesis = parser.parse(note.get("content") or "")
            if hypothesis is None:
                logger.warning(f"Failed to parse investigation note for {incident_id}")
            else:
                background_tasks.add_task(
                    _run_hypothesis,
                    orchestrator,
                    incident_id,
                    hypothesis,
                    parser.build_query(hypothesis),
                    {k: v for k, v in fields.items() if v},
                )

    elif event_type == "incident.acknowledged":
        assignees = data.get("assignees") or []
        by = assignees[0].get("summary") if assignees else None
        await orchestrator.acknowledge(data["id"], by=by or "unknown")

    elif event_type == "incident.escalated":
        policy = (data.get("escalation_policy") or {}).get("summary")
        reason = f"Escalated in PagerDuty ({policy})" if policy else "Escalated in PagerDuty"
        await orchestrator.escalate_external(data["id"], reason=reason)

    elif event_type == "incident.resolved":
        await orchestrator.record_external_resolution(data["id"], source="pagerduty")

    else:
        logger.debug(f"Unhandled PagerDuty event type: {event_type}")

    return {"received": True, "event_type": event_type}


@router.post("/slack")
async def slack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    orchestrator: IncidentOrchestrator = Depends(get_orchestrator),
):
    """Slack interactivity endpoint. Slack posts a form with a JSON `payload` field."""
    body = await request.body()
    if not verify_slack_signature(
        body,
        request.headers.get(SLACK_TIMESTAMP_HEADER),
        request.headers.get(SLACK_SIGNATURE_HEADER),
        settings.slack_signing_secret,
        max_age_seconds=settings.slack_signature_max_age_seconds,
    ):
        logger.warning("Invalid Slack request signature")
        return JSONResponse(status_code=401, content={"error": "INVALID_SIGNATURE", "detail": "Invalid signature"})

    form = parse_qs(body.decode())
    try:
        payload = json.loads((form.get("payload") or ["{}"])[0])
    except json.JSONDecodeError:
        raise ValidationError("Slack payload is not valid JSON")

    if payload.get("type") != "block_actions":
        return {}
    actions = payload.get("actions") or []
    if not actions:
        return {}

    action = actions[0]
    action_id = action.get("action_id")
    incident_id = action.get("value")
    user = payload.get("user") or {}
    approver = user.get("name") or user.get("username") or "unknown"

    if action_id not in (APPROVE_ACTION, REJECT_ACTION) or not incident_id:
        return {}

    approved = action_id == APPROVE_ACTION
    logger.info(f"Slack action {action_id} on {incident_id} by {approver}")
    background_tasks.add_task(_resolve_approval, orchestrator, incident_id, approved, approver)

    verdict = ":white_check_mark: Remediation approved" if approved else ":x: Remediation rejected"
    return {
        "response_type": "in_channel",
        "replace_original": True,
        "text": f"{verdict} by <@{approver}> for incident {incident_id}",
    }
