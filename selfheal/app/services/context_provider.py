"""
Runbook search client.

Talks to a knowledge-base HTTP API: `POST /search` for retrieval with metadata
filters and `POST /documents` for ingesting incident resolutions.
"""
from typing import Any, Dict, Optional

import httpx

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ContextResults

logger = get_logger(__name__)


class HttpContextProvider:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout, transport=self._transport
        )

    async def search(self, query: str, filters: Dict[str, Any], limit: int = 5) -> ContextResults:
        # Unset filters are dropped so the backend does not match on null
        body = {
            "query": query,
            "filters": {k: v for k, v in (filters or {}).items() if v},
            "limit": limit,
        }
        async with self._client() as client:
            resp = await client.post("/search", json=body)
            resp.raise_for_status()
            data = resp.json()

        results = ContextResults.model_validate(data)
        logger.debug(f"Runbook search returned {len(results.results)} results (max score {results.max_score})")
        return results

    async def ingest(self, content: str, metadata: Dict[str, Any]) -> Optional[str]:
        async with self._client() as client:
            resp = await client.post("/documents", json={"content": content, "metadata": metadata})
            resp.raise_for_status()
            data = resp.json()
        return data.get("id")
