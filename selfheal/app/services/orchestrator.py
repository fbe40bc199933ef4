"""
Incident Orchestrator.

Drives one incident through the remediation pipeline:

    TRIGGERED -> INVESTIGATING -> HYPOTHESIS_RECEIVED -> CONTEXT_RETRIEVED
      -> SYNTHESIZING -> EXECUTING -> VERIFYING -> RESOLVED

with ESCALATED reachable from every non-terminal stage. Every stage change goes
through the StateStore. Each phase handler either moves the incident forward or
escalates it; collaborator failures never leave a phase handler.
"""
from typing import Any, Dict, List, Optional, Tuple

from selfheal.app.core.config import Settings
from selfheal.app.core.errors import ConflictError, ExternalServiceError
from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import (
    ApprovalSnapshot,
    ContextResults,
    ExecutionResult,
    HealthTarget,
    ParsedHypothesis,
    Remediation,
)
from selfheal.app.schemas.incidents import IncidentStage, IncidentSummary, TriggerRequest, is_terminal
from selfheal.app.services.approval_gateway import ApprovalGateway
from selfheal.app.services.collaborators import Collaborators
from selfheal.app.services.confidence import ConfidenceEvaluator
from selfheal.app.services.edge_cases import EdgeCaseDetector
from selfheal.app.services.incident_learner import IncidentLearner
from selfheal.app.services.incident_locks import IncidentLocks
from selfheal.app.services.state_store import StateStore

logger = get_logger(__name__)


def default_query(hypothesis: ParsedHypothesis) -> str:
    """Search query used when no parser is configured to build one."""
    parts = [hypothesis.root_cause or hypothesis.hypothesis]
    parts.extend(hypothesis.affected_services)
    parts.extend(hypothesis.failure_tags)
    return " ".join(p for p in parts if p).strip()


class IncidentOrchestrator:
    def __init__(
        self,
        store: StateStore,
        collaborators: Collaborators,
        settings: Settings,
        evaluator: Optional[ConfidenceEvaluator] = None,
        detector: Optional[EdgeCaseDetector] = None,
        learner: Optional[IncidentLearner] = None,
        locks: Optional[IncidentLocks] = None,
    ):
        collaborators.require()
        self.settings = settings
        self.store = store
        self.collaborators = collaborators.guarded(settings)
        self.evaluator = evaluator or ConfidenceEvaluator.from_settings(settings)
        self.detector = detector or EdgeCaseDetector.from_settings(settings)
        self.locks = locks or IncidentLocks()

        if learner is None and settings.learning_enabled and self.collaborators.knowledge is not None:
            learner = IncidentLearner(
                store,
                self.collaborators.knowledge,
                stability_period_seconds=settings.learning_stability_period_seconds,
            )
        self.learner = learner

        self.gateway = ApprovalGateway(
            store,
            self.collaborators.approval,
            execute=self.execute_remediation,
            escalate=self._escalate,
            locks=self.locks,
            escalate_on_timeout=settings.escalate_on_approval_timeout,
        )

    # ── intake ───────────────────────────────────────────────────────────────

    async def handle_trigger(self, request: TriggerRequest) -> Tuple[Dict[str, Any], bool]:
        """Create the incident and start investigating. Redeliveries are no-ops."""
        async with self.locks.hold(request.incident_id):
            fields = request.model_dump(exclude={"incident_id"}, exclude_none=True)
            fields["triggered_at"] = self.store.now_iso()
            record, created = await self.store.create(request.incident_id, fields)
            if not created:
                logger.info(f"Duplicate trigger ignored for incident {request.incident_id}")
                return record, False

            record = await self.store.transition(request.incident_id, IncidentStage.INVESTIGATING)
            logger.info(
                f"Incident triggered: {request.incident_id}",
                extra={"extra_data": {"service": request.service_name, "urgency": request.urgency}},
            )
            return record, True

    async def receive_hypothesis(
        self,
        incident_id: str,
        hypothesis: ParsedHypothesis,
        query: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Accept an investigation hypothesis and run the rest of the pipeline.

        An incident that was never seen (the trigger was missed) is created on
        the spot. Only an incident that is still INVESTIGATING accepts a
        hypothesis; anything else raises ConflictError.
        """
        async with self.locks.hold(incident_id):
            record = await self.store.get(incident_id)
            if record is None:
                logger.info(f"Hypothesis for unknown incident {incident_id}, creating it")
                await self.store.create(incident_id, {**(fields or {}), "triggered_at": self.store.now_iso()})
                record = await self.store.transition(incident_id, IncidentStage.INVESTIGATING)

            if record["current_stage"] != IncidentStage.INVESTIGATING.value:
                raise ConflictError(
                    f"Incident {incident_id} is {record['current_stage']}; hypothesis not accepted"
                )

            await self.store.transition(incident_id, IncidentStage.HYPOTHESIS_RECEIVED, {
                "hypothesis": hypothesis.hypothesis,
                "root_cause": hypothesis.root_cause,
                "affected_services": hypothesis.affected_services,
                "failure_tags": hypothesis.failure_tags,
                "recommendation": hypothesis.recommendation,
                "confidence": hypothesis.confidence,
                "hypothesis_received_at": self.store.now_iso(),
            })

            if not query:
                parser = self.collaborators.parser
                query = parser.build_query(hypothesis) if parser is not None else default_query(hypothesis)

            await self.process_hypothesis(incident_id, hypothesis, query)
            return await self.store.require(incident_id)

    # ── phase handlers ───────────────────────────────────────────────────────

    async def process_hypothesis(self, incident_id: str, hypothesis: ParsedHypothesis, query: str) -> None:
        """Retrieve runbook context for the hypothesis, then synthesize."""
        async with self.locks.hold(incident_id):
            record = await self.store.require(incident_id)
            service = (hypothesis.affected_services or [None])[0] or record.get("service_name")

            if self.learner is not None and service and hypothesis.failure_tags:
                try:
                    previous = await self.learner.check_for_recurrence(service, hypothesis.failure_tags[0])
                    if previous:
                        logger.warning(
                            f"Recurrence of {previous['incident_id']} detected, its resolution is marked ineffective"
                        )
                except Exception as e:
                    logger.error(f"Recurrence check failed for {incident_id}: {e}")

            filters = {"service": service, "failure_tags": hypothesis.failure_tags}
            try:
                results = await self.collaborators.context.search(
                    query, filters, limit=self.settings.context_result_limit
                )
            except Exception as e:
                await self._escalate(incident_id, "context_retrieval", e)
                return

            results = results or ContextResults()
            await self.store.transition(incident_id, IncidentStage.CONTEXT_RETRIEVED, {
                "context_results": results.model_dump(mode="json")["results"],
                "context_match_score": (results.max_score or 0.0) * 100,
                "context_query": query,
            })
            logger.info(f"Context retrieved: {len(results.results)} results, best score {results.max_score}")

            await self.synthesize_remediation(incident_id, hypothesis, results)

    async def synthesize_remediation(
        self, incident_id: str, hypothesis: ParsedHypothesis, context: ContextResults
    ) -> None:
        """Ask the reasoning provider for a fix and route it through the confidence gate."""
        async with self.locks.hold(incident_id):
            record = await self.store.transition(incident_id, IncidentStage.SYNTHESIZING)
            # Tags known before a fix exists shape the prompt
            preliminary = self.detector.detect(hypothesis, record, context)

            try:
                remediation = await self.collaborators.reasoning.synthesize(
                    hypothesis, context, record, edge_cases=preliminary.tags
                )
            except Exception as e:
                await self._escalate(incident_id, "synthesis", e)
                return

            if remediation is None or not remediation.code:
                await self._escalate(incident_id, "synthesis", "No remediation code generated", {
                    "remediation_reasoning": remediation.reasoning if remediation else None,
                    "edge_cases": remediation.edge_cases if remediation else [],
                })
                return

            report = self.detector.detect(hypothesis, record, context, remediation)
            edge_cases = list(dict.fromkeys(report.tags + remediation.edge_cases))
            context_score = (context.max_score or 0.0) * 100

            decision = self.evaluator.decide(
                hypothesis.confidence,
                context_score,
                remediation.confidence,
                remediation.risk,
                edge_cases,
            )
            requires_approval = (
                bool(record.get("requires_approval"))
                or not decision.auto_execute
                or remediation.requires_approval
                or report.requires_human
            )
            if report.requires_human and not remediation.requires_approval:
                remediation = remediation.model_copy(update={
                    "reasoning": f"[AUTOMATIC ESCALATION: {', '.join(report.tags)}]\n\n{remediation.reasoning or ''}"
                })

            await self.store.update(incident_id, {
                "remediation_code": remediation.code,
                "remediation_language": remediation.language,
                "remediation_reasoning": remediation.reasoning,
                "remediation_risk": remediation.risk.value,
                "remediation_confidence": remediation.confidence,
                "edge_cases": edge_cases,
                "requires_approval": requires_approval,
                "confidence_decision": decision.reason,
            })

            if not requires_approval:
                logger.info(f"Auto-executing remediation for {incident_id} ({decision.reason})")
                await self.execute_remediation(incident_id)
                return

            logger.info(
                f"Requesting human approval for {incident_id}",
                extra={"extra_data": {
                    "gate_reason": decision.reason,
                    "provider_requested_approval": remediation.requires_approval,
                    "edge_cases": edge_cases,
                }},
            )
            await self._request_approval(incident_id, hypothesis, remediation)

    async def _request_approval(
        self, incident_id: str, hypothesis: ParsedHypothesis, remediation: Remediation
    ) -> None:
        snapshot = ApprovalSnapshot(
            remediation_code=remediation.code,
            language=remediation.language,
            hypothesis=hypothesis.hypothesis,
            risk=remediation.risk,
            reasoning=remediation.reasoning,
        )
        try:
            await self.gateway.request_approval(incident_id, snapshot)
        except ConflictError as e:
            logger.warning(f"Approval already pending for {incident_id}: {e.message}")
        except ExternalServiceError as e:
            await self._escalate(incident_id, "approval", e)

    async def execute_remediation(self, incident_id: str) -> None:
        """Run the stored remediation in a sandbox, unless the service already recovered."""
        async with self.locks.hold(incident_id):
            record = await self.store.require(incident_id)
            if is_terminal(record["current_stage"]):
                logger.warning(f"Incident {incident_id} is {record['current_stage']}, not executing")
                return

            code = record.get("remediation_code")
            if not code:
                await self._escalate(incident_id, "execution", "No remediation code found")
                return

            record = await self.store.transition(incident_id, IncidentStage.EXECUTING, {
                "execution_started_at": self.store.now_iso(),
            })
            target = self._health_target(record)

            if await self._self_healed(incident_id, target):
                return

            try:
                result = await self._run_in_sandbox(incident_id, record, code)
            except Exception as e:
                await self._escalate(incident_id, "execution", e)
                return

            await self.store.update(incident_id, {
                "execution_result": result.model_dump(),
                "execution_exit_code": result.exit_code,
                "executed_at": self.store.now_iso(),
            })

            if result.exit_code != 0:
                await self._escalate(incident_id, "execution", f"Remediation exited with code {result.exit_code}")
                return

            await self.verify_remediation(incident_id)

    async def _self_healed(self, incident_id: str, target: HealthTarget) -> bool:
        """Pre-flight probe. True when the incident was resolved without running anything."""
        probe = self.collaborators.preflight
        if probe is None or not self.settings.preflight_enabled:
            return False

        try:
            pre = await probe.probe(target)
        except ExternalServiceError as e:
            logger.warning(f"Pre-flight probe failed for {incident_id}, executing anyway: {e.message}")
            return False
        if pre is None:
            return False

        await self.store.update(incident_id, {
            "pre_verification_status": "healthy" if pre.success else "unhealthy",
            "pre_verification_result": pre.summary,
        })
        if not pre.success:
            return False

        logger.info(f"Pre-flight check passed for {incident_id}, service recovered on its own")
        await self.store.transition(incident_id, IncidentStage.RESOLVED, {
            "resolution": "self_healed",
            "resolved_at": self.store.now_iso(),
        })
        await self._notify(
            incident_id,
            "Self-healing engine: pre-flight health checks passed before any remediation ran. "
            "The issue appears to have resolved itself.",
        )
        return True

    async def _run_in_sandbox(self, incident_id: str, record: Dict[str, Any], code: str) -> ExecutionResult:
        execution = self.collaborators.execution
        parameters = {"incident_id": incident_id}
        if record.get("service_name"):
            parameters["service"] = record["service_name"]

        sandbox = await execution.acquire(incident_id, parameters)
        try:
            return await execution.run(sandbox, code, record.get("remediation_language") or "python")
        finally:
            try:
                await execution.release(sandbox)
            except Exception as e:
                logger.error(f"Failed to release sandbox {sandbox.name} for {incident_id}: {e}")

    async def verify_remediation(self, incident_id: str) -> None:
        async with self.locks.hold(incident_id):
            record = await self.store.transition(incident_id, IncidentStage.VERIFYING)

            try:
                verification = await self.collaborators.verification.verify(self._health_target(record))
            except Exception as e:
                await self._escalate(incident_id, "verification", e)
                return

            await self.store.update(incident_id, {
                "verification_status": "passed" if verification.success else "failed",
                "verification_result": verification.model_dump(),
                "verified_at": self.store.now_iso(),
            })

            if not verification.success:
                await self._escalate(incident_id, "verification", "Verification failed after remediation")
                return

            record = await self.store.transition(incident_id, IncidentStage.RESOLVED, {
                "resolution": "auto_remediated",
                "resolved_at": self.store.now_iso(),
            })
            logger.info(f"Incident {incident_id} remediated and verified")

            await self._notify(
                incident_id,
                "Self-healing engine remediated this incident.\n\n"
                f"Root cause: {record.get('root_cause') or 'see investigation'}\n"
                "Action taken: automated remediation executed\n"
                f"Verification: {_summarise(verification.summary)}",
            )

            if self.learner is not None:
                try:
                    await self.learner.schedule(record)
                except Exception as e:
                    logger.error(f"Failed to schedule {incident_id} for learning: {e}")

    # ── escalation ───────────────────────────────────────────────────────────

    async def _escalate(
        self,
        incident_id: str,
        error_stage: str,
        error: Any,
        extra: Optional[Dict[str, Any]] = None,
        notify: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Move the incident to ESCALATED. Never raises."""
        message = error.message if isinstance(error, ExternalServiceError) else str(error)
        try:
            record = await self.store.get(incident_id)
            if record is None:
                logger.error(f"Cannot escalate unknown incident {incident_id}: {message}")
                return None
            if is_terminal(record["current_stage"]):
                logger.warning(f"Incident {incident_id} already {record['current_stage']}, not escalating")
                return record

            record = await self.store.transition(incident_id, IncidentStage.ESCALATED, {
                **(extra or {}),
                "error": message,
                "error_stage": error_stage,
                "escalated_at": self.store.now_iso(),
            })
        except Exception:
            logger.exception(f"Failed to escalate incident {incident_id}")
            return None

        logger.warning(
            f"Incident {incident_id} escalated during {error_stage}: {message}",
            extra={"extra_data": {"error_stage": error_stage}},
        )
        if notify:
            await self._notify(
                incident_id,
                f"Self-healing engine escalated this incident during {error_stage}.\n"
                f"Reason: {message}\nManual intervention required.",
            )
        return record

    async def _notify(self, incident_id: str, content: str) -> None:
        notifier = self.collaborators.resolution
        if notifier is None:
            return
        try:
            await notifier.add_note(incident_id, content)
        except Exception as e:
            logger.warning(f"Failed to add note to incident {incident_id}: {e}")

    # ── external events and queries ──────────────────────────────────────────

    async def acknowledge(self, incident_id: str, by: Optional[str] = None) -> Optional[Dict[str, Any]]:
        async with self.locks.hold(incident_id):
            if await self.store.get(incident_id) is None:
                logger.info(f"Acknowledgement for unknown incident {incident_id} ignored")
                return None
            return await self.store.update(incident_id, {
                "acknowledged_at": self.store.now_iso(),
                "acknowledged_by": by,
            })

    async def escalate_external(self, incident_id: str, reason: str = "Escalated in incident tracker") -> Optional[Dict[str, Any]]:
        async with self.locks.hold(incident_id):
            await self.store.clear_pending_approval(incident_id)
            return await self._escalate(incident_id, "external", reason, notify=False)

    async def record_external_resolution(self, incident_id: str, source: str = "pagerduty") -> Optional[Dict[str, Any]]:
        """
        The incident was resolved outside this service.

        The incident is closed through ESCALATED with
        error_stage="external_resolution"; RESOLVED is kept for outcomes this
        service verified. Any pending approval is withdrawn and no note is
        posted back.
        """
        async with self.locks.hold(incident_id):
            if await self.store.get(incident_id) is None:
                logger.info(f"Resolution of unknown incident {incident_id} ignored")
                return None
            await self.store.clear_pending_approval(incident_id)
            return await self._escalate(
                incident_id,
                "external_resolution",
                f"Resolved in {source}",
                extra={
                    "externally_resolved_at": self.store.now_iso(),
                    "resolution_source": source,
                    "pending_approval": False,
                },
                notify=False,
            )

    async def list_active_summaries(self) -> List[IncidentSummary]:
        records = await self.store.list_active()
        summaries = [
            IncidentSummary(
                incident_id=r["incident_id"],
                title=r.get("title"),
                stage=r["current_stage"],
                service=r.get("service_name"),
                pending_approval=bool(r.get("pending_approval")),
                updated_at=r.get("updated_at"),
            )
            for r in records
        ]
        return sorted(summaries, key=lambda s: s.incident_id)

    async def get_incident(self, incident_id: str) -> Dict[str, Any]:
        return await self.store.require(incident_id)

    @staticmethod
    def _health_target(record: Dict[str, Any]) -> HealthTarget:
        return HealthTarget(
            incident_id=record["incident_id"],
            service_name=record.get("service_name"),
            health_check_url=record.get("health_check_url"),
        )


def _summarise(summary: Dict[str, Any]) -> str:
    if not summary:
        return "passed"
    if "passed" in summary and "total" in summary:
        return f"{summary['passed']}/{summary['total']} checks passed"
    return ", ".join(f"{k}={v}" for k, v in summary.items())
