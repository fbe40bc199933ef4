"""
Slack approval channel.

Posts an interactive Block Kit message with Approve / Reject buttons. The
button action ids are what the Slack webhook handler listens for.
"""
from typing import Any, Dict, List, Optional

import httpx

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ApprovalRequest

logger = get_logger(__name__)

APPROVE_ACTION = "approve_remediation"
REJECT_ACTION = "reject_remediation"


class SlackAPIError(Exception):
    pass


def _clip(text: Optional[str], limit: int, fallback: str) -> str:
    return text[:limit] if text else fallback


def approval_blocks(request: ApprovalRequest) -> List[Dict[str, Any]]:
    return [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": ":warning: Remediation Approval Required", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Incident ID:*\n{request.incident_id}"},
                {"type": "mrkdwn", "text": f"*Service:*\n{request.service or 'Unknown'}"},
                {"type": "mrkdwn", "text": f"*Risk Level:*\n{request.risk.value}"},
                {"type": "mrkdwn", "text": f"*Title:*\n{request.title or 'Untitled'}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Hypothesis:*\n{_clip(request.hypothesis, 500, 'No hypothesis available')}"},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Reasoning:*\n{_clip(request.reasoning, 500, 'No reasoning available')}"},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Proposed Remediation Code:*\n```{_clip(request.code, 1000, 'No code generated')}```"},
        },
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": ":white_check_mark: Approve", "emoji": True},
                    "style": "primary",
                    "action_id": APPROVE_ACTION,
                    "value": request.incident_id,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": ":x: Reject", "emoji": True},
                    "style": "danger",
                    "action_id": REJECT_ACTION,
                    "value": request.incident_id,
                },
            ],
        },
    ]


class SlackApprovalNotifier:
    def __init__(self, token: str, channel: str, api_url: str = "https://slack.com/api",
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = token
        self.channel = channel
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def request_approval(self, request: ApprovalRequest) -> Optional[str]:
        """Post the approval message. Returns `<channel>:<ts>` for later reference."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self.api_url}/chat.postMessage",
                headers={"Authorization": f"Bearer {self.token}"},
                json={
                    "channel": self.channel,
                    "text": f"Remediation Approval Required: {request.title or request.incident_id}",
                    "blocks": approval_blocks(request),
                },
            )
            resp.raise_for_status()
            data = resp.json()

        # Slack reports API errors with a 200 and ok=false
        if not data.get("ok"):
            raise SlackAPIError(data.get("error") or "unknown Slack error")

        logger.info(f"Approval request for {request.incident_id} posted to #{self.channel}")
        return f"{data.get('channel')}:{data.get('ts')}"
