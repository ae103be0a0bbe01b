"""
CaseFlow Engine - Error Taxonomy

All failures raised by the workflow engine derive from WorkflowError so the
HTTP layer (and any other caller) can map them in one place.

- NotFound / InvalidTransition: client errors, surfaced verbatim, never retried
- InvariantViolation: a request that would break a work item invariant
- PersistenceError: underlying store failure, the atomic unit was rolled back
- SequenceExhausted: display-number counter overflow for a scope
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for engine errors."""

    code = "workflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFound(WorkflowError):
    code = "not_found"


class InvalidTransition(WorkflowError):
    code = "invalid_transition"


class InvariantViolation(WorkflowError):
    code = "invariant_violation"


class PersistenceError(WorkflowError):
    code = "persistence_error"


class SequenceExhausted(WorkflowError):
    code = "sequence_exhausted"
