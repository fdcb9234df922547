"""
Custom exceptions for the clinic queue engine.

Every error carries a stable ``code`` so callers at the boundary can return
a structured failure result instead of a raw traceback.
"""

from typing import Any, Dict, Optional


class QueueError(Exception):
    """Base class for all queue engine errors."""

    code = "QUEUE_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
            },
        }


class NotFoundError(QueueError):
    """Raised when an entry, clinic or waitlist candidate does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None, message: str = None):
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = (
                f"{resource} with ID '{resource_id}' not found"
                if resource_id else f"{resource} not found"
            )
        super().__init__(message)


class InvalidStateError(QueueError):
    """Raised when an entry is not in a state that allows the operation."""

    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class BusinessRuleError(QueueError):
    """Raised when an operation would violate a queue invariant."""

    code = "BUSINESS_RULE_ERROR"
    status_code = 422

    def __init__(self, message: str, rule: str = "business_rule"):
        self.rule = rule
        super().__init__(message)


class ConflictError(QueueError):
    """Raised when the requested change already happened."""

    code = "CONFLICT_ERROR"
    status_code = 409


class ValidationError(QueueError):
    """Raised for malformed input to an operation."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class EstimationFailure(QueueError):
    """Raised when an estimator throws or cannot produce a usable result."""

    code = "ESTIMATION_FAILURE"
    status_code = 503

    def __init__(self, strategy: str, message: str, confidence: Optional[float] = None):
        self.strategy = strategy
        self.confidence = confidence
        super().__init__(f"{strategy} estimation failed: {message}")


class DependencyFailure(QueueError):
    """Raised when the store, waitlist or another collaborator call fails."""

    code = "DEPENDENCY_FAILURE"
    status_code = 502

    def __init__(self, dependency: str, message: str, original_error: Optional[BaseException] = None):
        self.dependency = dependency
        self.original_error = original_error
        super().__init__(f"{dependency} error: {message}")
