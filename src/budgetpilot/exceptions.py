"""
Error taxonomy for the budget ledger.

Local errors (``ValidationError``, ``BusyError``) are raised before any
visible state changes. ``WriteError`` subclasses come from the persistence
layer and always send the coordinator down the rollback path.
"""

from __future__ import annotations


class BudgetPilotError(Exception):
    """Base class for every error raised by BudgetPilot."""


class ValidationError(BudgetPilotError):
    """A mutation was rejected by local, synchronous checks.

    ``field`` names the offending input when the failure is field-level,
    so a form can attach the message to the right control.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


class PermissionDeniedError(ValidationError):
    """The acting user's permission level does not allow the mutation."""


class IllegalTransitionError(ValidationError):
    """A purchase request status change is not in the transition table."""


class BusyError(BudgetPilotError):
    """Another mutation on the same entity is still in flight."""

    def __init__(self, entity_key: str) -> None:
        super().__init__(f"{entity_key} is still saving a previous change; try again when it finishes")
        self.entity_key = entity_key


class WriteError(BudgetPilotError):
    """A persistence call failed. Always triggers rollback."""

    retryable: bool = True

    def __init__(self, message: str, entity_key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity_key = entity_key


class TransientWriteError(WriteError):
    """Network failure, timeout or server error. The same intent may be retried."""


class ConflictError(WriteError):
    """The stored entity no longer matches what the client assumed.

    Callers should refresh before retrying rather than replaying the
    identical mutation.
    """

    retryable = False


class EntityNotFoundError(ConflictError):
    """The entity was deleted (or never existed) on the server."""
