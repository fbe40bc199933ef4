"""
Error taxonomy.

Every error carries an HTTP-style status code and a machine-readable code so the
API layer can render it without inspecting the type.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(AppError):
    """A required collaborator or setting is missing."""
    code = "CONFIG_ERROR"


class ExternalServiceError(AppError):
    """A configured collaborator call failed or timed out."""
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service_name: str, message: str, original_error: Optional[BaseException] = None):
        super().__init__(f"{service_name} error: {message}")
        self.service_name = service_name
        self.original_error = original_error


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, incident_id: str, from_stage: str, to_stage: str):
        super().__init__(f"Incident {incident_id}: illegal transition {from_stage} -> {to_stage}")
        self.incident_id = incident_id
        self.from_stage = from_stage
        self.to_stage = to_stage


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
