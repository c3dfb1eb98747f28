"""Exception hierarchy for the billing core.

Every error carries enough context for a caller to act on it: the offending
``field``, the ``entity`` it concerns, and the ``rule`` that was violated.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for billing errors."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        entity: str | None = None,
        rule: str | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.entity = entity
        self.rule = rule
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "field": self.field,
            "entity": self.entity,
            "rule": self.rule,
            "details": self.details,
        }


class ValidationError(BillingError):
    """Malformed or out-of-range input, rejected before any state change."""

    pass


class OwnershipError(BillingError):
    """The acting creator or subscriber does not own the entity."""

    pass


class StateConflictError(BillingError):
    """The operation is not legal in the entity's current lifecycle state."""

    pass


class NotFoundError(BillingError):
    """A referenced entity does not exist."""

    pass


class UpstreamError(BillingError):
    """An external collaborator (deal store, notifier, renderer, storage) failed."""

    def __init__(
        self,
        message: str,
        *,
        collaborator: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        super().__init__(message, entity=collaborator, details=details)
        self.collaborator = collaborator
        self.status_code = status_code
