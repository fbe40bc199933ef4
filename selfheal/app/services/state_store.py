"""
Incident State Store.

Durable, TTL-bound key/value storage for incident records, pending approvals
and learning records. Keys are namespaced (`incident:<id>`, `approval:<id>`).

Two backends share one contract:
- SqlStateBackend: SQLAlchemy async engine. Expired rows read as absent and
  are deleted by `purge_expired`, which the service runs on a schedule.
- MemoryStateBackend: in-process dict used when the database is unreachable at
  startup. No TTL enforcement, nothing survives a restart.
"""
import asyncio
import copy
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from selfheal.app.core.config import Settings
from selfheal.app.core.database import Base, create_engine, create_session_factory
from selfheal.app.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from selfheal.app.core.logging import get_logger
from selfheal.app.models.state_record_orm import StateRecordORM
from selfheal.app.schemas.incidents import INITIAL_STAGE, IncidentStage, is_legal_transition, is_terminal

logger = get_logger(__name__)

INCIDENT_NS = "incident"
APPROVAL_NS = "approval"

# Fields only the store itself may write
_MANAGED_FIELDS = frozenset({"incident_id", "current_stage", "stage_history", "created_at", "updated_at"})


def _key(namespace: str, record_id: str) -> str:
    return f"{namespace}:{record_id}"


class StateBackend(ABC):
    """Raw namespaced JSON storage."""

    durable: bool = False

    @abstractmethod
    async def put(self, namespace: str, record_id: str, payload: Dict[str, Any], ttl_seconds: Optional[int]) -> None:
        ...

    @abstractmethod
    async def get(self, namespace: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, namespace: str, record_id: str) -> None:
        ...

    @abstractmethod
    async def scan(self, namespace: str) -> List[Dict[str, Any]]:
        ...

    async def purge_expired(self) -> int:
        """Physically remove records past their TTL. Returns how many went."""
        return 0

    async def close(self) -> None:
        pass


class SqlStateBackend(StateBackend):
    durable = True

    def __init__(self, engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession],
                 clock: Callable[[], float] = time.time):
        self.engine = engine
        self.session_factory = session_factory
        self._clock = clock

    @classmethod
    async def connect(cls, settings: Settings, clock: Callable[[], float] = time.time) -> "SqlStateBackend":
        """Create the engine, ensure the table exists and prove the database answers."""
        engine = create_engine(settings)

        async def _init():
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await conn.execute(text("SELECT 1"))

        try:
            await asyncio.wait_for(_init(), timeout=settings.store_connect_timeout_seconds)
        except BaseException:
            await engine.dispose()
            raise
        return cls(engine, create_session_factory(engine), clock=clock)

    async def put(self, namespace, record_id, payload, ttl_seconds):
        now = self._clock()
        async with self.session_factory() as session:
            await session.merge(StateRecordORM(
                key=_key(namespace, record_id),
                namespace=namespace,
                payload=payload,
                expires_at=now + ttl_seconds if ttl_seconds else None,
                updated_at=now,
            ))
            await session.commit()

    async def get(self, namespace, record_id):
        key = _key(namespace, record_id)
        async with self.session_factory() as session:
            row = await session.get(StateRecordORM, key)
            if row is None:
                return None
            if row.expires_at is not None and row.expires_at <= self._clock():
                await session.delete(row)
                await session.commit()
                logger.debug(f"State record {key} expired")
                return None
            return copy.deepcopy(row.payload)

    async def delete(self, namespace, record_id):
        async with self.session_factory() as session:
            await session.execute(delete(StateRecordORM).where(StateRecordORM.key == _key(namespace, record_id)))
            await session.commit()

    async def scan(self, namespace):
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(StateRecordORM).where(
                    StateRecordORM.namespace == namespace,
                    or_(StateRecordORM.expires_at.is_(None), StateRecordORM.expires_at > now),
                )
            )
            return [copy.deepcopy(row.payload) for row in result.scalars().all()]

    async def purge_expired(self):
        async with self.session_factory() as session:
            result = await session.execute(
                delete(StateRecordORM).where(
                    StateRecordORM.expires_at.is_not(None),
                    StateRecordORM.expires_at <= self._clock(),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def close(self):
        await self.engine.dispose()


class MemoryStateBackend(StateBackend):
    """Best-effort fallback. TTLs are accepted and ignored."""

    durable = False

    def __init__(self):
        self._data: Dict[str, Tuple[str, Dict[str, Any]]] = {}

    async def put(self, namespace, record_id, payload, ttl_seconds):
        self._data[_key(namespace, record_id)] = (namespace, copy.deepcopy(payload))

    async def get(self, namespace, record_id):
        entry = self._data.get(_key(namespace, record_id))
        return copy.deepcopy(entry[1]) if entry else None

    async def delete(self, namespace, record_id):
        self._data.pop(_key(namespace, record_id), None)

    async def scan(self, namespace):
        return [copy.deepcopy(payload) for ns, payload in self._data.values() if ns == namespace]


class StateStore:
    """
    Incident-aware API over a StateBackend.

    `update` shallow-merges and keeps fields it was not given. `transition` is
    the only way to move `current_stage`; it refuses edges outside the stage
    graph and appends exactly one history entry per call. Every write refreshes
    the record's TTL.
    """

    def __init__(self, backend: StateBackend, incident_ttl_seconds: int = 7 * 24 * 3600,
                 approval_ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.backend = backend
        self.incident_ttl_seconds = incident_ttl_seconds
        self.approval_ttl_seconds = approval_ttl_seconds
        self._clock = clock

    @classmethod
    async def connect(cls, settings: Settings, clock: Callable[[], float] = time.time) -> "StateStore":
        """Open the durable backend, falling back to memory if it cannot be reached."""
        try:
            backend: StateBackend = await SqlStateBackend.connect(settings, clock=clock)
            logger.info("State store connected (durable)")
        except Exception as e:
            logger.warning(
                f"State store unreachable, using in-memory fallback: {e}",
                extra={"extra_data": {"store_mode": "degraded"}},
            )
            backend = MemoryStateBackend()
        return cls(
            backend,
            incident_ttl_seconds=settings.incident_ttl_seconds,
            approval_ttl_seconds=settings.approval_ttl_seconds,
            clock=clock,
        )

    @property
    def degraded(self) -> bool:
        return not self.backend.durable

    def now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    async def close(self) -> None:
        await self.backend.close()

    # ── incident records ─────────────────────────────────────────────────────

    async def create(self, incident_id: str, fields: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], bool]:
        """
        Create an incident in the initial stage.

        Idempotent: when the incident already exists it is returned untouched
        and the second element of the tuple is False.
        """
        if not incident_id:
            raise ValidationError("incident_id is required")
        existing = await self.get(incident_id)
        if existing is not None:
            return existing, False

        now = self.now_iso()
        record = {k: v for k, v in (fields or {}).items() if k not in _MANAGED_FIELDS}
        record.update({
            "incident_id": incident_id,
            "current_stage": INITIAL_STAGE.value,
            "stage_history": [],
            "created_at": now,
            "updated_at": now,
        })
        await self.backend.put(INCIDENT_NS, incident_id, record, self.incident_ttl_seconds)
        logger.debug(f"Incident state created: {incident_id}")
        return record, True

    async def get(self, incident_id: str) -> Optional[Dict[str, Any]]:
        return await self.backend.get(INCIDENT_NS, incident_id)

    async def require(self, incident_id: str) -> Dict[str, Any]:
        record = await self.get(incident_id)
        if record is None:
            raise NotFoundError(f"Incident {incident_id}")
        return record

    async def update(self, incident_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge `partial` into the record. Stage fields are off limits."""
        forbidden = _MANAGED_FIELDS & partial.keys()
        if forbidden:
            raise ValidationError(f"Fields managed by the store cannot be updated: {sorted(forbidden)}")
        record = await self.require(incident_id)
        record.update(partial)
        record["updated_at"] = self.now_iso()
        await self.backend.put(INCIDENT_NS, incident_id, record, self.incident_ttl_seconds)
        return record

    async def transition(self, incident_id: str, new_stage: IncidentStage,
                         extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        record = await self.require(incident_id)
        current = record["current_stage"]
        target = IncidentStage(new_stage).value
        if not is_legal_transition(current, target):
            raise InvalidTransitionError(incident_id, current, target)

        extra = extra or {}
        forbidden = _MANAGED_FIELDS & extra.keys()
        if forbidden:
            raise ValidationError(f"Fields managed by the store cannot be updated: {sorted(forbidden)}")

        now = self.now_iso()
        record.update(extra)
        record["stage_history"] = list(record.get("stage_history") or []) + [
            {"from": current, "to": target, "timestamp": now}
        ]
        record["current_stage"] = target
        record["updated_at"] = now
        await self.backend.put(INCIDENT_NS, incident_id, record, self.incident_ttl_seconds)
        logger.info(f"Incident {incident_id}: {current} -> {target}")
        return record

    async def list_active(self) -> List[Dict[str, Any]]:
        """All readable incidents whose stage is not terminal."""
        records = await self.backend.scan(INCIDENT_NS)
        return [r for r in records if not is_terminal(r["current_stage"])]

    async def delete(self, incident_id: str) -> None:
        await self.backend.delete(INCIDENT_NS, incident_id)
        logger.debug(f"Incident state deleted: {incident_id}")

    # ── pending approvals ────────────────────────────────────────────────────

    async def set_pending_approval(self, incident_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = {**data, "incident_id": incident_id, "requested_at": self.now_iso()}
        await self.backend.put(APPROVAL_NS, incident_id, record, self.approval_ttl_seconds)
        return record

    async def get_pending_approval(self, incident_id: str) -> Optional[Dict[str, Any]]:
        return await self.backend.get(APPROVAL_NS, incident_id)

    async def clear_pending_approval(self, incident_id: str) -> None:
        await self.backend.delete(APPROVAL_NS, incident_id)

    # ── other namespaces ─────────────────────────────────────────────────────

    async def put_record(self, namespace: str, record_id: str, data: Dict[str, Any],
                         ttl_seconds: Optional[int] = None) -> None:
        await self.backend.put(namespace, record_id, data, ttl_seconds)

    async def get_record(self, namespace: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self.backend.get(namespace, record_id)

    async def delete_record(self, namespace: str, record_id: str) -> None:
        await self.backend.delete(namespace, record_id)

    async def scan_records(self, namespace: str) -> List[Dict[str, Any]]:
        return await self.backend.scan(namespace)

    async def purge_expired(self) -> int:
        """Delete expired records from every namespace."""
        purged = await self.backend.purge_expired()
        if purged:
            logger.info(f"Purged {purged} expired state records")
        return purged
