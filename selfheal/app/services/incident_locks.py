"""
Per-incident mutual exclusion.

Triggers, webhook redeliveries, background pipelines and human decisions for the
same incident all end up in the orchestrator. Each of those entry points runs
under `hold(incident_id)` so only one of them mutates a given record at a time.

The lock is re-entrant along one task chain: an approval that resumes execution
already holds the lock and must not deadlock on the execution entry point.
Exclusion is process-local; several worker processes sharing one database are
not serialised against each other.
"""
import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Dict, FrozenSet

from selfheal.app.core.logging import incident_id_ctx


class IncidentLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        # Per instance: two IncidentLocks never share ownership
        self._held: ContextVar[FrozenSet[str]] = ContextVar(f"held_incident_locks_{id(self)}", default=frozenset())

    def is_held(self, incident_id: str) -> bool:
        """True when the current task chain already owns the incident's lock."""
        return incident_id in self._held.get()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, incident_id: str) -> AsyncIterator[None]:
        if self.is_held(incident_id):
            yield
            return

        lock = self._locks.setdefault(incident_id, asyncio.Lock())
        self._waiters[incident_id] = self._waiters.get(incident_id, 0) + 1
        try:
            async with lock:
                held_token = self._held.set(self._held.get() | {incident_id})
                incident_token = incident_id_ctx.set(incident_id)
                try:
                    yield
                finally:
                    incident_id_ctx.reset(incident_token)
                    self._held.reset(held_token)
        finally:
            self._waiters[incident_id] -= 1
            if self._waiters[incident_id] == 0:
                del self._waiters[incident_id]
                self._locks.pop(incident_id, None)
