"""
Typed errors raised by the estimate engine.

Every error carries a machine-readable ``code`` class attribute and keeps its
context as attributes so the HTTP layer can serialize it without parsing the
message.

    EngineError
    +-- ValidationError
    |   +-- EstimateNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- PaymentNotFoundError
    |   +-- PaymentScheduleExceededError
    +-- PreconditionError
    |   +-- InvalidTransitionError
    |   +-- LineItemsLockedError
    +-- ExternalDependencyError
    +-- ConcurrencyError
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all estimate engine errors."""

    code: str = "ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


# Validation: bad input, returned to the caller and never partially applied


class ValidationError(EngineError):
    code: str = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        self.errors = errors or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class EstimateNotFoundError(ValidationError):
    code: str = "ESTIMATE_NOT_FOUND"

    def __init__(self, estimate_id: Optional[str]):
        self.estimate_id = estimate_id
        super().__init__(f"Estimate not found: {estimate_id}")


class LineItemNotFoundError(ValidationError):
    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, estimate_id: str, line_item_id: str):
        self.estimate_id = estimate_id
        self.line_item_id = line_item_id
        super().__init__(f"Line item {line_item_id} not found on estimate {estimate_id}")


class PaymentNotFoundError(ValidationError):
    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, estimate_id: str, payment_id: str):
        self.estimate_id = estimate_id
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found on estimate {estimate_id}")


class PaymentScheduleExceededError(ValidationError):
    code: str = "PAYMENT_SCHEDULE_EXCEEDED"

    def __init__(self, mode: str, scheduled: float, limit: float):
        self.mode = mode
        self.scheduled = scheduled
        self.limit = limit
        super().__init__(f"Payment schedule ({mode}) sums to {scheduled:.2f}, which exceeds {limit:.2f}")


# Preconditions: the document is not in a state that allows the operation


class PreconditionError(EngineError):
    code: str = "PRECONDITION_FAILED"


class InvalidTransitionError(PreconditionError):
    code: str = "INVALID_TRANSITION"

    def __init__(self, action: str, estimate_state: str, client_state: Optional[str], reason: str = ""):
        self.action = action
        self.estimate_state = estimate_state
        self.client_state = client_state
        message = f"Cannot {action} from ({estimate_state}, {client_state or 'null'})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class LineItemsLockedError(PreconditionError):
    code: str = "LINE_ITEMS_LOCKED"

    def __init__(self, estimate_id: str, reason: str):
        self.estimate_id = estimate_id
        self.reason = reason
        super().__init__(f"Estimate {estimate_id} is locked: {reason}")


# Collaborators outside the engine


class ExternalDependencyError(EngineError):
    code: str = "EXTERNAL_DEPENDENCY_FAILED"

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")


# Conditional write lost against another writer


class ConcurrencyError(EngineError):
    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_id: str, expected_version: Optional[int] = None):
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Estimate {entity_id} was modified by another writer"
            + (f" (expected version {expected_version})" if expected_version is not None else "")
        )
