"""Workflow error taxonomy shared by services and the JSON error handlers."""
from __future__ import annotations

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 400
    error_type = "WORKFLOW_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict:
        payload = {"success": False, "error": self.error_type, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(WorkflowError):
    """Missing or malformed input, including a justification below the policy minimum."""

    status_code = 400
    error_type = "VALIDATION_ERROR"


class NotFoundError(WorkflowError):
    status_code = 404
    error_type = "NOT_FOUND"


class ConflictError(WorkflowError):
    """The request is well-formed but collides with current entity state or a concurrent writer."""

    status_code = 409
    error_type = "CONFLICT"


class AuthorizationError(WorkflowError):
    status_code = 403
    error_type = "FORBIDDEN"


class PersistenceError(WorkflowError):
    """Store unavailable; the message never carries driver details."""

    status_code = 503
    error_type = "PERSISTENCE_ERROR"

    def __init__(self, message: str = "The data store is temporarily unavailable. Please retry.") -> None:
        super().__init__(message)
