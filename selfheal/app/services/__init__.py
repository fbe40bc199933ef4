"""Services package."""

from selfheal.app.services.collaborators import Collaborators
from selfheal.app.services.orchestrator import IncidentOrchestrator
from selfheal.app.services.state_store import StateStore

__all__ = [
    "Collaborators",
    "IncidentOrchestrator",
    "StateStore",
]
