"""Request-scoped access to the services wired up in create_app."""
from fastapi import Request

from selfheal.app.core.config import Settings
from selfheal.app.core.errors import AppError
from selfheal.app.services.orchestrator import IncidentOrchestrator


class ServiceUnavailableError(AppError):
    status_code = 503
    code = "NOT_READY"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> IncidentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ServiceUnavailableError("Orchestrator is not running")
    return orchestrator
