"""
Pytest configuration and fixtures.
"""
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from selfheal.app.core.config import Settings
from selfheal.app.main import create_app
from selfheal.app.schemas.collaborators import (
    ContextResult,
    ContextResults,
    ExecutionResult,
    ParsedHypothesis,
    Remediation,
    Sandbox,
    VerificationResult,
)
from selfheal.app.services.collaborators import Collaborators
from selfheal.app.services.hypothesis_parser import NoteHypothesisParser
from selfheal.app.services.orchestrator import IncidentOrchestrator
from selfheal.app.services.state_store import MemoryStateBackend, StateStore

# Use in-memory SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START_TIME = 1_700_000_000.0


class FakeClock:
    """Settable wall clock for TTL tests."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_hypothesis(**overrides) -> ParsedHypothesis:
    """A hypothesis that clears every gate: confident, specific, non-critical service."""
    data = {
        "hypothesis": "Connection pool exhausted in inventory-service after a deploy leaked connections",
        "confidence": 95,
        "root_cause": "Leaked database connections in inventory-service",
        "affected_services": ["inventory-service"],
        "failure_tags": ["database_connection_pool"],
        "recommendation": "Recycle the pool and raise pool size to 50",
    }
    data.update(overrides)
    return ParsedHypothesis(**data)


def make_context(score: float = 0.95, content: str = "Recycle the connection pool, then raise the pool size.") -> ContextResults:
    return ContextResults(results=[
        ContextResult(title="DB connection pool exhaustion", content=content, score=score),
    ])


def make_remediation(**overrides) -> Remediation:
    data = {
        "code": "print('pool recycled')",
        "language": "python",
        "reasoning": "Recycling the pool releases leaked connections",
        "risk": "LOW",
        "confidence": 92,
    }
    data.update(overrides)
    return Remediation(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        log_level="WARNING",
        pagerduty_webhook_secret=None,
        learning_enabled=False,
        breaker_failure_threshold=100,
    )


@pytest.fixture
async def sql_store(settings: Settings, clock: FakeClock) -> AsyncGenerator[StateStore, None]:
    store = await StateStore.connect(settings, clock=clock)
    assert not store.degraded
    yield store
    await store.close()


@pytest.fixture
def memory_store(clock: FakeClock) -> StateStore:
    return StateStore(MemoryStateBackend(), clock=clock)


@pytest.fixture
def collaborators() -> Collaborators:
    """Every role backed by an AsyncMock configured for the happy path."""
    context = AsyncMock()
    context.search.return_value = make_context()

    reasoning = AsyncMock()
    reasoning.synthesize.return_value = make_remediation()

    execution = AsyncMock()
    execution.acquire.return_value = Sandbox(sandbox_id="ws-1", name="remediation-ws-1")
    execution.run.return_value = ExecutionResult(exit_code=0, stdout="pool recycled")
    execution.release.return_value = None

    verification = AsyncMock()
    verification.verify.return_value = VerificationResult(success=True, summary={"passed": 3, "total": 3})

    approval = AsyncMock()
    approval.request_approval.return_value = "C123:1700000000.000100"

    resolution = AsyncMock()
    resolution.add_note.return_value = None

    return Collaborators(
        context=context,
        reasoning=reasoning,
        execution=execution,
        verification=verification,
        approval=approval,
        resolution=resolution,
        parser=NoteHypothesisParser(),
    )


@pytest.fixture
def orchestrator(sql_store: StateStore, collaborators: Collaborators, settings: Settings) -> IncidentOrchestrator:
    return IncidentOrchestrator(sql_store, collaborators, settings)


@pytest.fixture
def app(sql_store: StateStore, collaborators: Collaborators, settings: Settings) -> FastAPI:
    return create_app(settings, collaborators, store=sql_store)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Test client over the ASGI app, wired to the in-memory store and mock collaborators."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
