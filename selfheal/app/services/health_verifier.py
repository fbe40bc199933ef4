"""HTTP health checks used for the pre-flight probe and post-remediation verification."""
import time
from typing import Any, Dict, List, Optional

import httpx

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import HealthTarget, VerificationResult

logger = get_logger(__name__)


class HttpHealthVerifier:
    """
    GETs each health URL of the target; a check passes on any 2xx answer.

    `probe` returns None when the target has nothing to check, which the
    orchestrator reads as "no opinion" and carries on with execution.
    `verify` on the same target counts as passed with the check marked skipped.
    """

    def __init__(self, timeout: float = 10.0, extra_paths: Optional[List[str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.extra_paths = extra_paths or []
        self._transport = transport

    def _urls(self, target: HealthTarget) -> List[str]:
        if not target.health_check_url:
            return []
        base = target.health_check_url.rstrip("/")
        return [target.health_check_url] + [f"{base}/{p.lstrip('/')}" for p in self.extra_paths]

    async def _check_all(self, urls: List[str]) -> VerificationResult:
        failed: List[Dict[str, Any]] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for url in urls:
                started = time.monotonic()
                try:
                    resp = await client.get(url)
                    ok = resp.is_success
                    detail = {"url": url, "status": resp.status_code}
                except httpx.HTTPError as e:
                    ok = False
                    detail = {"url": url, "error": str(e) or type(e).__name__}
                detail["duration_ms"] = round((time.monotonic() - started) * 1000)
                if not ok:
                    failed.append(detail)

        summary = {"passed": len(urls) - len(failed), "total": len(urls), "failed_checks": failed}
        return VerificationResult(success=not failed, summary=summary)

    async def probe(self, target: HealthTarget) -> Optional[VerificationResult]:
        urls = self._urls(target)
        if not urls:
            return None
        return await self._check_all(urls)

    async def verify(self, target: HealthTarget) -> VerificationResult:
        urls = self._urls(target)
        if not urls:
            logger.info(f"No health check configured for incident {target.incident_id}, verification skipped")
            return VerificationResult(success=True, summary={"skipped": True, "reason": "no health check url"})
        result = await self._check_all(urls)
        logger.info(
            f"Verification for {target.incident_id}: {result.summary['passed']}/{result.summary['total']} passed"
        )
        return result
