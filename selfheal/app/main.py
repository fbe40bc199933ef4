"""
SelfHeal - Incident Remediation Orchestrator

FastAPI application factory.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from selfheal.app.api import health, incidents, webhooks
from selfheal.app.core.config import Settings, get_settings
from selfheal.app.core.errors import AppError
from selfheal.app.core.logging import get_logger, setup_logging
from selfheal.app.middleware.trace import TracingMiddleware
from selfheal.app.services.collaborator_factory import build_default_collaborators
from selfheal.app.services.collaborators import Collaborators
from selfheal.app.services.orchestrator import IncidentOrchestrator
from selfheal.app.services.state_store import StateStore
from selfheal.app.workers.scheduled import start_scheduler

logger = get_logger(__name__)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


def create_app(
    settings: Optional[Settings] = None,
    collaborators: Optional[Collaborators] = None,
    store: Optional[StateStore] = None,
) -> FastAPI:
    """
    Build the application.

    When `store` is given the orchestrator is wired immediately and the
    lifespan only runs the background workers. Otherwise the lifespan opens the
    state store from `settings.database_url` and owns it until shutdown.
    """
    settings = settings or get_settings()
    setup_logging(level=settings.log_level)

    def build_orchestrator(state_store: StateStore) -> IncidentOrchestrator:
        return IncidentOrchestrator(
            state_store,
            collaborators if collaborators is not None else build_default_collaborators(settings),
            settings,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        owned_store = None
        if getattr(app.state, "orchestrator", None) is None:
            owned_store = await StateStore.connect(settings)
            try:
                app.state.orchestrator = build_orchestrator(owned_store)
            except Exception:
                await owned_store.close()
                raise
        orchestrator: IncidentOrchestrator = app.state.orchestrator

        workers = [
            start_scheduler(
                "approval-sweep",
                settings.approval_sweep_interval_seconds,
                orchestrator.gateway.sweep_expired,
            ),
            start_scheduler(
                "state-purge",
                settings.state_purge_interval_seconds,
                orchestrator.store.purge_expired,
            ),
        ]
        if orchestrator.learner is not None:
            workers.append(start_scheduler(
                "incident-learning",
                settings.learning_interval_seconds,
                orchestrator.learner.process_pending,
            ))

        yield

        logger.info(f"Shutting down {settings.app_name}")
        for worker in workers:
            await worker.stop()
        if owned_store is not None:
            await owned_store.close()
            app.state.orchestrator = None

    app = FastAPI(
        title=settings.app_name,
        description="Autonomous incident remediation with a confidence-gated human approval loop",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = build_orchestrator(store) if store is not None else None

    app.add_middleware(TracingMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(incidents.router, prefix=f"{settings.api_prefix}/incidents", tags=["Incidents"])

    return app
