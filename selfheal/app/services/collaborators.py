"""
Capability interfaces for external collaborators.

Each role is a Protocol. Concrete clients live in their own modules; the
orchestrator only depends on these shapes and wraps every one of them in a
ResilientProvider before use.
"""
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from selfheal.app.core.config import Settings
from selfheal.app.core.errors import ConfigurationError
from selfheal.app.core.resilience import guard
from selfheal.app.schemas.collaborators import (
    ApprovalRequest,
    ContextResults,
    ExecutionResult,
    HealthTarget,
    ParsedHypothesis,
    Remediation,
    Sandbox,
    VerificationResult,
)


@runtime_checkable
class HypothesisParser(Protocol):
    def is_hypothesis_note(self, note: Dict[str, Any]) -> bool: ...

    def parse(self, content: str) -> Optional[ParsedHypothesis]: ...

    def build_query(self, hypothesis: ParsedHypothesis) -> str: ...


@runtime_checkable
class ContextProvider(Protocol):
    async def search(self, query: str, filters: Dict[str, Any], limit: int = 5) -> ContextResults: ...


@runtime_checkable
class ReasoningProvider(Protocol):
    async def synthesize(
        self,
        hypothesis: ParsedHypothesis,
        context: ContextResults,
        incident: Dict[str, Any],
        edge_cases: Sequence[str] = (),
    ) -> Optional[Remediation]: ...


@runtime_checkable
class ExecutionProvider(Protocol):
    async def acquire(self, incident_id: str, parameters: Dict[str, str]) -> Sandbox: ...

    async def run(self, sandbox: Sandbox, code: str, language: str) -> ExecutionResult: ...

    async def release(self, sandbox: Sandbox) -> None: ...


@runtime_checkable
class HealthProbe(Protocol):
    async def probe(self, target: HealthTarget) -> Optional[VerificationResult]: ...


@runtime_checkable
class VerificationProvider(Protocol):
    async def verify(self, target: HealthTarget) -> VerificationResult: ...


@runtime_checkable
class ApprovalNotifier(Protocol):
    async def request_approval(self, request: ApprovalRequest) -> Optional[str]: ...


@runtime_checkable
class ResolutionNotifier(Protocol):
    async def add_note(self, incident_id: str, content: str) -> None: ...


@runtime_checkable
class KnowledgeIngestor(Protocol):
    async def ingest(self, content: str, metadata: Dict[str, Any]) -> Optional[str]: ...


@dataclass
class Collaborators:
    """The set of collaborators one orchestrator instance talks to."""
    context: Optional[ContextProvider] = None
    reasoning: Optional[ReasoningProvider] = None
    execution: Optional[ExecutionProvider] = None
    verification: Optional[VerificationProvider] = None
    approval: Optional[ApprovalNotifier] = None
    preflight: Optional[HealthProbe] = None
    resolution: Optional[ResolutionNotifier] = None
    parser: Optional[HypothesisParser] = None
    knowledge: Optional[KnowledgeIngestor] = None

    REQUIRED = ("context", "reasoning", "execution", "verification", "approval")

    def missing(self) -> List[str]:
        return [name for name in self.REQUIRED if getattr(self, name) is None]

    def require(self) -> None:
        """Fail fast, before any state is touched, when a required role is unset."""
        missing = self.missing()
        if missing:
            raise ConfigurationError(f"Required collaborators not configured: {', '.join(missing)}")

    def guarded(self, settings: Settings) -> "Collaborators":
        """Return a copy with every async role wrapped in a timeout and circuit breaker."""
        timeouts = {
            "context": settings.context_timeout_seconds,
            "reasoning": settings.reasoning_timeout_seconds,
            "execution": settings.execution_timeout_seconds,
            "verification": settings.verification_timeout_seconds,
            "preflight": settings.verification_timeout_seconds,
            "approval": settings.notification_timeout_seconds,
            "resolution": settings.notification_timeout_seconds,
            "knowledge": settings.notification_timeout_seconds,
        }
        wrapped = {}
        for f in fields(self):
            target = getattr(self, f.name)
            if f.name in timeouts:
                target = guard(
                    f.name,
                    target,
                    timeout=timeouts[f.name],
                    failure_threshold=settings.breaker_failure_threshold,
                    recovery_timeout=settings.breaker_recovery_timeout_seconds,
                )
            wrapped[f.name] = target
        return Collaborators(**wrapped)
