"""
Mutation models — user intents and the outcome of driving them through the coordinator.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from budgetpilot.exceptions import ConflictError, WriteError
from budgetpilot.models.actors import Actor
from budgetpilot.models.ledger import EntityKind, LedgerEntity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MutationAction(str, Enum):
    """What a mutation does to its entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TRANSITION = "transition"


class MutationStatus(str, Enum):
    """Lifecycle of a submitted mutation."""

    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class Mutation(BaseModel):
    """A user intent: create/update/delete an entity, or change a request's status.

    ``fields`` carries the raw form values (amounts may still be strings);
    handlers parse and validate them before anything is projected.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    entity: EntityKind
    action: MutationAction
    target_id: int | None = Field(default=None, description="Existing entity id; None for creates")
    fields: dict[str, Any] = Field(default_factory=dict)
    actor: Actor | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def describe(self) -> str:
        """Short human label, e.g. ``update purchase_request 12``."""
        target = f" {self.target_id}" if self.target_id is not None else ""
        if self.action == MutationAction.TRANSITION:
            return f"mark purchase_request{target} {self.fields.get('status')}"
        return f"{self.action.value} {self.entity.value}{target}"


@dataclass
class MutationResult:
    """Outcome of one mutation after reconciliation.

    A rolled-back result always carries the ``error`` that caused it and a
    ``message`` that says the optimistic change shown earlier was reverted.
    """

    mutation_id: str
    entity: EntityKind
    action: MutationAction
    status: MutationStatus
    entity_id: int | None = None
    temporary_id: int | None = None
    record: LedgerEntity | None = None
    error: WriteError | None = None
    message: str = ""
    stale: bool = False
    refetch_error: str | None = None
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == MutationStatus.CONFIRMED

    @property
    def rolled_back(self) -> bool:
        return self.status == MutationStatus.ROLLED_BACK

    @property
    def needs_refresh(self) -> bool:
        """The server reported a conflict; retrying blindly will fail again."""
        return isinstance(self.error, ConflictError)

    def raise_for_status(self) -> MutationResult:
        """Re-raise the write error of a rolled-back mutation."""
        if self.error is not None and self.rolled_back:
            raise self.error
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "entity": self.entity.value,
            "action": self.action.value,
            "status": self.status.value,
            "entity_id": self.entity_id,
            "temporary_id": self.temporary_id,
            "message": self.message,
            "error": str(self.error) if self.error else None,
            "stale": self.stale,
            "refetch_error": self.refetch_error,
            "finished_at": self.finished_at.isoformat(),
        }
