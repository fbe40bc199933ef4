"""
Approval Gateway.

Human-in-the-loop handshake for remediations the confidence gate would not run
on its own. At most one approval is pending per incident; the pending record
carries the remediation snapshot and expires after the approval TTL.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional

from selfheal.app.core.errors import ConflictError, NotFoundError
from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ApprovalRequest, ApprovalSnapshot
from selfheal.app.schemas.incidents import is_terminal
from selfheal.app.services.collaborators import ApprovalNotifier
from selfheal.app.services.incident_locks import IncidentLocks
from selfheal.app.services.state_store import StateStore

logger = get_logger(__name__)

ExecuteCallback = Callable[[str], Awaitable[None]]
EscalateCallback = Callable[..., Awaitable[Optional[Dict[str, Any]]]]


class ApprovalGateway:
    def __init__(
        self,
        store: StateStore,
        notifier: ApprovalNotifier,
        execute: ExecuteCallback,
        escalate: EscalateCallback,
        locks: Optional[IncidentLocks] = None,
        escalate_on_timeout: bool = False,
    ):
        self.store = store
        self.notifier = notifier
        self._execute = execute
        self._escalate = escalate
        self.locks = locks or IncidentLocks()
        self.escalate_on_timeout = escalate_on_timeout

    async def request_approval(self, incident_id: str, snapshot: ApprovalSnapshot) -> Dict[str, Any]:
        """
        Park the remediation and ask a human to decide.

        Raises ConflictError if an approval is already pending. If the approval
        channel cannot be reached the pending record is withdrawn and the
        channel's error propagates.
        """
        async with self.locks.hold(incident_id):
            if await self.store.get_pending_approval(incident_id) is not None:
                raise ConflictError(f"Approval already pending for incident {incident_id}")

            record = await self.store.require(incident_id)
            pending = await self.store.set_pending_approval(incident_id, snapshot.model_dump(mode="json"))

            request = ApprovalRequest(
                incident_id=incident_id,
                title=record.get("title"),
                hypothesis=snapshot.hypothesis,
                risk=snapshot.risk,
                code=snapshot.remediation_code,
                reasoning=snapshot.reasoning,
                service=record.get("service_name"),
            )
            try:
                message_ref = await self.notifier.request_approval(request)
            except Exception:
                await self.store.clear_pending_approval(incident_id)
                raise

            await self.store.update(incident_id, {
                "pending_approval": True,
                "approval_requested_at": pending["requested_at"],
                "approval_message_ref": message_ref,
            })
            logger.info(f"Approval requested for incident {incident_id}")
            return pending

    async def get_pending(self, incident_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get_pending_approval(incident_id)

    async def resolve_approval(self, incident_id: str, approved: bool, approver: str) -> Dict[str, Any]:
        """Apply a human decision: approve resumes execution, reject escalates."""
        async with self.locks.hold(incident_id):
            pending = await self.store.get_pending_approval(incident_id)
            if pending is None:
                raise NotFoundError(f"Pending approval for incident {incident_id}")
            await self.store.clear_pending_approval(incident_id)
            now = self.store.now_iso()

            if approved:
                await self.store.update(incident_id, {
                    "pending_approval": False,
                    "human_approved": True,
                    "approved_by": approver,
                    "approved_at": now,
                })
                logger.info(f"Remediation for {incident_id} approved by {approver}")
                await self._execute(incident_id)
            else:
                logger.info(f"Remediation for {incident_id} rejected by {approver}")
                await self._escalate(incident_id, "approval", f"Remediation rejected by {approver}", {
                    "pending_approval": False,
                    "human_rejected": True,
                    "rejected_by": approver,
                    "rejected_at": now,
                })

            return await self.store.require(incident_id)

    async def sweep_expired(self) -> List[str]:
        """
        Find incidents still flagged as awaiting approval whose approval record
        has expired. Records the expiry, and escalates when configured to.
        """
        expired: List[str] = []
        for record in await self.store.list_active():
            if not record.get("pending_approval"):
                continue
            incident_id = record["incident_id"]

            async with self.locks.hold(incident_id):
                if await self.store.get_pending_approval(incident_id) is not None:
                    continue
                current = await self.store.get(incident_id)
                if current is None or not current.get("pending_approval") or is_terminal(current["current_stage"]):
                    continue

                now = self.store.now_iso()
                if self.escalate_on_timeout:
                    await self._escalate(
                        incident_id,
                        "approval_timeout",
                        "Approval request expired without a decision",
                        {"pending_approval": False, "approval_expired_at": now},
                    )
                else:
                    await self.store.update(incident_id, {"pending_approval": False, "approval_expired_at": now})
                    logger.warning(f"Approval for incident {incident_id} expired without a decision")
                expired.append(incident_id)

        return expired
