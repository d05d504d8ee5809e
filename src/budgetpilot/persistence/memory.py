"""
In-memory persistence — a transactional reference store.

Behaves like the real service as far as the client can tell: assigns
positive ids, enforces the server-side rules (dependent-deletion guard,
approval gate on transactions, expense/revenue ownership) and answers with
the same error types. Used by the test suite, the ``demo`` command and
offline sessions.

Test hooks:
  - ``fail_next(error)`` makes the next call of a kind raise ``error``
  - ``latency`` adds an ``asyncio.sleep`` before every call
  - ``hold()`` / ``release()`` park calls until released
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Iterable
from typing import Any

import pydantic

from budgetpilot.exceptions import ConflictError, EntityNotFoundError, TransientWriteError, WriteError
from budgetpilot.models.ledger import (
    ENTITY_MODELS,
    ApprovalStatus,
    EntityKind,
    LedgerAggregate,
    LedgerEntity,
    LineItem,
    PurchaseRequest,
    Transaction,
    entity_key,
)
from budgetpilot.models.mutations import utcnow
from budgetpilot.persistence.base import BasePersistence

logger = logging.getLogger("budgetpilot.persistence.memory")

READ = "read"
WRITE = "write"


class InMemoryPersistence(BasePersistence):
    """Dictionary-backed ledger service."""

    name = "memory"
    description = "In-process ledger store"

    def __init__(self, latency: float = 0.0, **options: Any) -> None:
        super().__init__(**options)
        self.latency = latency
        self._tables: dict[EntityKind, dict[int, LedgerEntity]] = {kind: {} for kind in EntityKind}
        self._next_id = 1
        self._failures: dict[str, deque[WriteError]] = {READ: deque(), WRITE: deque()}
        self._gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Seeding and test hooks
    # ------------------------------------------------------------------

    def seed(self, entities: Iterable[LedgerEntity]) -> None:
        """Store entities as-is, keeping their ids."""
        for entity in entities:
            self._tables[entity.kind][entity.id] = entity
            self._next_id = max(self._next_id, entity.id + 1)

    def seed_aggregate(self, aggregate: LedgerAggregate) -> None:
        self.seed(aggregate.records())

    def fail_next(self, error: WriteError | None = None, operation: str = WRITE, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        for _ in range(times):
            self._failures[operation].append(error or TransientWriteError("Simulated persistence failure"))

    def hold(self, operation: str = WRITE) -> None:
        """Park every ``operation`` call until :meth:`release`."""
        gate = self._gates.get(operation)
        if gate is None:
            gate = self._gates[operation] = asyncio.Event()
        gate.clear()

    def release(self, operation: str = WRITE) -> None:
        gate = self._gates.get(operation)
        if gate is not None:
            gate.set()

    def count(self, kind: EntityKind) -> int:
        return len(self._tables[kind])

    # ------------------------------------------------------------------
    # BasePersistence
    # ------------------------------------------------------------------

    async def create(self, kind: EntityKind, payload: dict[str, Any]) -> LedgerEntity:
        await self._enter(WRITE, f"create {kind.value}")
        data = {**payload, "id": self._next_id}

        if kind == EntityKind.PURCHASE_REQUEST:
            line_item = self._require(EntityKind.LINE_ITEM, data.get("line_item_id"))
            if not line_item.is_expense:
                raise ConflictError(f"Line item {line_item.id} does not accept purchase requests")
            data["approval_status"] = ApprovalStatus.PENDING
            data.update(approved_date=None, approved_by=None, rejection_reason=None)
        elif kind == EntityKind.TRANSACTION:
            request_id = data.get("purchase_request_id")
            if request_id is not None:
                request = self._require(EntityKind.PURCHASE_REQUEST, request_id)
                if request.approval_status != ApprovalStatus.APPROVED:
                    raise ConflictError(f"Purchase request {request.id} is not approved")
                data["line_item_id"] = request.line_item_id
            else:
                line_item = self._require(EntityKind.LINE_ITEM, data.get("line_item_id"))
                if line_item.is_expense:
                    raise ConflictError(f"Line item {line_item.id} needs transactions through purchase requests")

        entity = self._build(kind, data)
        self._tables[kind][entity.id] = entity
        self._next_id += 1
        logger.debug("Created %s", entity.key)
        return entity

    async def read(self, kind: EntityKind, entity_id: int) -> LedgerEntity:
        await self._enter(READ, f"read {entity_key(kind, entity_id)}")
        return self._require(kind, entity_id)

    async def update(self, kind: EntityKind, entity_id: int, changes: dict[str, Any]) -> LedgerEntity:
        await self._enter(WRITE, f"update {entity_key(kind, entity_id)}")
        current = self._require(kind, entity_id)

        if kind == EntityKind.PURCHASE_REQUEST and changes.get("line_item_id", current.line_item_id) != current.line_item_id:
            target = self._require(EntityKind.LINE_ITEM, changes["line_item_id"])
            if not target.is_expense:
                raise ConflictError(f"Line item {target.id} does not accept purchase requests")
            if self._transactions_of_request(entity_id):
                raise ConflictError(f"Purchase request {entity_id} has transactions and cannot move")

        updated = self._build(kind, {**current.model_dump(), **changes, "id": entity_id})
        self._tables[kind][entity_id] = updated
        return updated

    async def delete(self, kind: EntityKind, entity_id: int) -> None:
        await self._enter(WRITE, f"delete {entity_key(kind, entity_id)}")
        self._require(kind, entity_id)

        if kind == EntityKind.LINE_ITEM:
            dependents = [
                e
                for table in (EntityKind.PURCHASE_REQUEST, EntityKind.TRANSACTION)
                for e in self._tables[table].values()
                if e.line_item_id == entity_id
            ]
            if dependents:
                raise ConflictError(
                    f"Line item {entity_id} still has {len(dependents)} dependent record(s)",
                    entity_key=entity_key(kind, entity_id),
                )
        elif kind == EntityKind.PURCHASE_REQUEST and self._transactions_of_request(entity_id):
            raise ConflictError(
                f"Purchase request {entity_id} has transactions and cannot be deleted",
                entity_key=entity_key(kind, entity_id),
            )

        del self._tables[kind][entity_id]

    async def transition(
        self,
        request_id: int,
        status: ApprovalStatus,
        actor_id: int | None = None,
        rejection_reason: str | None = None,
    ) -> PurchaseRequest:
        await self._enter(WRITE, f"transition {entity_key(EntityKind.PURCHASE_REQUEST, request_id)} {status.value}")
        current: PurchaseRequest = self._require(EntityKind.PURCHASE_REQUEST, request_id)
        if current.approval_status == status:
            raise ConflictError(
                f"Purchase request {request_id} is already {status.value}",
                entity_key=current.key,
            )

        if status == ApprovalStatus.APPROVED:
            effects = {"approved_date": utcnow(), "approved_by": actor_id, "rejection_reason": None}
        elif status == ApprovalStatus.REJECTED:
            effects = {"approved_date": None, "approved_by": actor_id, "rejection_reason": rejection_reason}
        else:
            effects = {"approved_date": None, "approved_by": None, "rejection_reason": None}

        updated = current.model_copy(update={"approval_status": status, **effects})
        self._tables[EntityKind.PURCHASE_REQUEST][request_id] = updated
        return updated

    async def fetch_aggregate(self, line_item_id: int) -> LedgerAggregate:
        await self._enter(READ, f"fetch {entity_key(EntityKind.LINE_ITEM, line_item_id)}")
        line_item: LineItem = self._require(EntityKind.LINE_ITEM, line_item_id)
        requests = [r for r in self._tables[EntityKind.PURCHASE_REQUEST].values() if r.line_item_id == line_item_id]
        txns = [t for t in self._tables[EntityKind.TRANSACTION].values() if t.line_item_id == line_item_id]
        return LedgerAggregate(line_item=line_item, purchase_requests=requests, transactions=txns)

    async def list_pending_requests(
        self,
        project_id: int | None = None,
        requested_by: int | None = None,
    ) -> list[PurchaseRequest]:
        await self._enter(READ, "list pending")
        found = []
        for request in self._tables[EntityKind.PURCHASE_REQUEST].values():
            if request.approval_status != ApprovalStatus.PENDING:
                continue
            if requested_by is not None and request.requested_by != requested_by:
                continue
            if project_id is not None:
                owner = self._tables[EntityKind.LINE_ITEM].get(request.line_item_id)
                if owner is None or owner.project_id != project_id:
                    continue
            found.append(request)
        return sorted(found, key=lambda r: r.id)

    async def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enter(self, operation: str, label: str) -> None:
        self.calls.append((operation, label))
        if self.latency:
            await asyncio.sleep(self.latency)
        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()
        if self._failures[operation]:
            error = self._failures[operation].popleft()
            logger.debug("Injected failure on %s: %s", label, error)
            raise error

    def _require(self, kind: EntityKind, entity_id: Any) -> Any:
        entity = self._tables[kind].get(entity_id) if entity_id is not None else None
        if entity is None:
            raise EntityNotFoundError(
                f"{kind.value.replace('_', ' ').capitalize()} {entity_id} not found",
                entity_key=entity_key(kind, entity_id) if entity_id is not None else None,
            )
        return entity

    def _transactions_of_request(self, request_id: int) -> list[Transaction]:
        return [t for t in self._tables[EntityKind.TRANSACTION].values() if t.purchase_request_id == request_id]

    @staticmethod
    def _build(kind: EntityKind, data: dict[str, Any]) -> Any:
        try:
            return ENTITY_MODELS[kind].model_validate(data)
        except pydantic.ValidationError as e:
            raise TransientWriteError(f"Rejected {kind.value}: {e.errors()[0].get('msg')}") from e
