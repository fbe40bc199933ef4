"""PagerDuty REST client used to post resolution and escalation notes on incidents."""
from typing import Optional

import httpx

from selfheal.app.core.logging import get_logger

logger = get_logger(__name__)


class PagerDutyNotifier:
    def __init__(self, api_key: str, from_email: str, api_url: str = "https://api.pagerduty.com",
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def add_note(self, incident_id: str, content: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self.api_url}/incidents/{incident_id}/notes",
                headers={
                    "Authorization": f"Token token={self.api_key}",
                    "Accept": "application/vnd.pagerduty+json;version=2",
                    "From": self.from_email,
                },
                json={"note": {"content": content}},
            )
            resp.raise_for_status()
        logger.info(f"Note added to PagerDuty incident {incident_id}")
