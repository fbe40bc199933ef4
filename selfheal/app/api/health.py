"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check. The service is ready once the orchestrator is wired.
    A state store running on the in-memory fallback still serves traffic
    but is reported as degraded.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": {"orchestrator": "not started"}},
        )

    store = orchestrator.store
    return {
        "status": "ready",
        "checks": {
            "orchestrator": "ok",
            "state_store": "degraded" if store.degraded else "durable",
        },
    }
