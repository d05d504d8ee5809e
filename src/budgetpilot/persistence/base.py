"""
Base persistence — abstract interface for the remote ledger store.

The coordinator never talks to a database or HTTP API directly; it calls a
persistence backend. Backends translate whatever failures they see into the
error taxonomy in ``budgetpilot.exceptions``:

  - ``TransientWriteError`` for network failures, timeouts and server errors
  - ``ConflictError`` when the stored entity no longer matches
  - ``EntityNotFoundError`` when the entity is gone
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from budgetpilot.exceptions import BudgetPilotError
from budgetpilot.models.ledger import (
    ApprovalStatus,
    EntityKind,
    LedgerAggregate,
    LedgerEntity,
    PurchaseRequest,
)


class BasePersistence(ABC):
    """Abstract base class for persistence backends.

    To add a backend, subclass this and implement every abstract method.

    Example::

        class MyApiPersistence(BasePersistence):
            name = "my_api"

            async def fetch_aggregate(self, line_item_id: int) -> LedgerAggregate:
                ...
    """

    name: str = "base"
    description: str = "Base persistence backend"

    def __init__(self, **options: Any) -> None:
        self.options = options

    @abstractmethod
    async def create(self, kind: EntityKind, payload: dict[str, Any]) -> LedgerEntity:
        """Create an entity and return it with its server-assigned id."""
        ...

    @abstractmethod
    async def read(self, kind: EntityKind, entity_id: int) -> LedgerEntity:
        ...

    @abstractmethod
    async def update(self, kind: EntityKind, entity_id: int, changes: dict[str, Any]) -> LedgerEntity:
        """Apply ``changes`` and return the stored entity."""
        ...

    @abstractmethod
    async def delete(self, kind: EntityKind, entity_id: int) -> None:
        ...

    @abstractmethod
    async def transition(
        self,
        request_id: int,
        status: ApprovalStatus,
        actor_id: int | None = None,
        rejection_reason: str | None = None,
    ) -> PurchaseRequest:
        """Change a purchase request's approval status."""
        ...

    @abstractmethod
    async def fetch_aggregate(self, line_item_id: int) -> LedgerAggregate:
        """Return a line item with every purchase request and transaction it owns."""
        ...

    @abstractmethod
    async def list_pending_requests(
        self,
        project_id: int | None = None,
        requested_by: int | None = None,
    ) -> list[PurchaseRequest]:
        """Purchase requests awaiting a decision."""
        ...

    async def close(self) -> None:
        """Release any held resources."""

    async def ping(self) -> bool:
        """Whether the backend is reachable."""
        return True

    async def health_check(self) -> dict[str, Any]:
        """Check backend health and connectivity."""
        try:
            healthy = await self.ping()
            return {"backend": self.name, "healthy": healthy, "error": None}
        except BudgetPilotError as e:
            return {"backend": self.name, "healthy": False, "error": str(e)}
