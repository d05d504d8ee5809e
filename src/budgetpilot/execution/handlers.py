"""
Mutation handlers — per-entity plug-ins driven by the mutation coordinator.

Each handler knows, for one kind of intent:
  - How to validate it against the visible store (synchronously)
  - Which records it touches and which entity keys it locks
  - What the optimistic projection looks like
  - Which persistence call carries it out
  - How to put the authoritative record in place once the server answers
  - Which aggregates to refetch afterwards
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import pydantic

from budgetpilot.exceptions import PermissionDeniedError, ValidationError
from budgetpilot.execution.approval import ApprovalStateMachine
from budgetpilot.ledger.store import LedgerStore, Touch
from budgetpilot.models.actors import Actor
from budgetpilot.models.ledger import (
    ApprovalStatus,
    CategoryType,
    EntityKind,
    LedgerAggregate,
    LedgerEntity,
    LineItem,
    PurchaseRequest,
    Transaction,
)
from budgetpilot.models.money import to_minor_units
from budgetpilot.models.mutations import Mutation, MutationAction, utcnow
from budgetpilot.persistence.base import BasePersistence

logger = logging.getLogger("budgetpilot.execution.handlers")


class TemporaryIds:
    """Negative, strictly decreasing ids for records created optimistically.

    Derived from the clock so ids stay unique across restarts of a session;
    server ids are always positive, so the two can never collide.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0

    def next(self) -> int:
        candidate = -int(self._clock() * 1000)
        if candidate >= self._last:
            candidate = self._last - 1
        self._last = candidate
        return candidate


@dataclass
class HandlerContext:
    """Collaborators every handler may consult while planning."""

    store: LedgerStore
    approvals: ApprovalStateMachine
    temporary_ids: TemporaryIds = field(default_factory=TemporaryIds)
    currency: str = "USD"


@dataclass
class MutationPlan:
    """A validated mutation, ready to be projected and dispatched."""

    mutation: Mutation
    touches: list[Touch]
    lock_keys: list[str]
    aggregates: set[int]
    projected: list[LedgerEntity] = field(default_factory=list)
    removed: list[Touch] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)
    temporary_id: int | None = None
    before: LedgerEntity | None = None

    @property
    def target_id(self) -> int | None:
        return self.mutation.target_id if self.mutation.target_id is not None else self.temporary_id


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


def parse_amount(value: Any, field_name: str, currency: str = "USD", allow_zero: bool = False) -> int:
    """Parse a user-entered amount into minor units, raising ``ValidationError``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Amount is required", field=field_name)
    try:
        amount = to_minor_units(value, currency)
    except ValueError as e:
        raise ValidationError(str(e), field=field_name) from e
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError("Amount must be greater than zero", field=field_name)
    return amount


def require_text(fields: dict[str, Any], name: str, label: str) -> str:
    value = fields.get(name)
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required", field=name)
    return str(value).strip()


def optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_entity(model: type[pydantic.BaseModel], data: dict[str, Any]) -> Any:
    """Construct a model, reporting the first failing field as a ``ValidationError``."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(first.get("msg", "Invalid value"), field=loc) from e


def _authorize(actor: Actor | None, allowed: Callable[[Actor], bool], what: str) -> None:
    if actor is not None and not allowed(actor):
        raise PermissionDeniedError(f"{actor.name or f'User {actor.id}'} cannot {what}")


def _changed(current: pydantic.BaseModel, changes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if getattr(current, k) != v}


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class MutationHandler(ABC):
    """Abstract base class for mutation handlers.

    Subclass this for each entity kind and register it with the
    ``MutationCoordinator``.
    """

    name: str = "base_handler"
    entity: EntityKind
    supported_actions: frozenset[MutationAction] = frozenset(
        {MutationAction.CREATE, MutationAction.UPDATE, MutationAction.DELETE}
    )

    def can_handle(self, mutation: Mutation) -> bool:
        return mutation.entity == self.entity and mutation.action in self.supported_actions

    @abstractmethod
    def plan(self, mutation: Mutation, ctx: HandlerContext) -> MutationPlan:
        """Validate ``mutation`` against the visible store and plan it.

        Raises:
            ValidationError: The mutation is not legal right now. Nothing has changed.
        """
        ...

    def project(self, plan: MutationPlan, store: LedgerStore) -> None:
        """Swap the optimistic projection into the store."""
        for touch in plan.removed:
            store.remove(touch.kind, touch.entity_id)
        for entity in plan.projected:
            store.put(entity)
        if plan.mutation.action == MutationAction.CREATE and plan.temporary_id is not None:
            store.mark_pending(self.entity, plan.temporary_id, plan.mutation.id)

    async def dispatch(self, plan: MutationPlan, persistence: BasePersistence) -> LedgerEntity | None:
        """Carry the mutation out against the persistence layer."""
        action = plan.mutation.action
        if action == MutationAction.CREATE:
            return await persistence.create(self.entity, plan.payload)
        if action == MutationAction.UPDATE:
            return await persistence.update(self.entity, plan.mutation.target_id, plan.payload)
        await persistence.delete(self.entity, plan.mutation.target_id)
        return None

    def confirm(
        self,
        plan: MutationPlan,
        record: LedgerEntity | None,
        ctx: HandlerContext,
        live: Callable[[int], bool],
    ) -> None:
        """Replace the projection with the authoritative ``record``.

        ``live`` says whether an aggregate touched by the plan is still loaded
        under the generation it had when the mutation started. Nothing is
        written into aggregates that were evicted in the meantime.
        """
        store = ctx.store
        action = plan.mutation.action
        if action == MutationAction.CREATE:
            if plan.temporary_id is not None:
                store.remove(self.entity, plan.temporary_id)
            if record is not None and live(record.line_item_id):
                store.put(record)
        elif action in (MutationAction.UPDATE, MutationAction.TRANSITION) and record is not None:
            if live(record.line_item_id):
                store.put(record)
            elif store.get(record.kind, record.id) is not None:
                store.remove(record.kind, record.id)

    def refetch_targets(self, plan: MutationPlan, record: LedgerEntity | None) -> list[int]:
        """Line items whose aggregates should be refetched after success."""
        return sorted(plan.aggregates)

    def _loaded(self, ctx: HandlerContext, kind: EntityKind, entity_id: int | None, field_name: str) -> Any:
        if entity_id is None:
            raise ValidationError(f"Missing {kind.value.replace('_', ' ')} id", field=field_name)
        entity = ctx.store.get(kind, entity_id)
        if entity is None:
            raise ValidationError(f"{kind.value.replace('_', ' ').capitalize()} {entity_id} is not loaded", field=field_name)
        return entity


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------


class LineItemHandler(MutationHandler):
    """Create, edit and delete budget line items."""

    name = "line_item"
    entity = EntityKind.LINE_ITEM

    editable = ("name", "description", "vendor_name", "estimated_amount", "category_id", "category_name", "project_id")

    def plan(self, mutation: Mutation, ctx: HandlerContext) -> MutationPlan:
        _authorize(mutation.actor, lambda a: a.can_manage_line_items, "manage line items")
        fields = mutation.fields

        if mutation.action == MutationAction.CREATE:
            temp_id = ctx.temporary_ids.next()
            data = {
                "id": temp_id,
                "name": require_text(fields, "name", "Name"),
                "description": optional_text(fields.get("description")),
                "vendor_name": optional_text(fields.get("vendor_name")),
                "estimated_amount": parse_amount(
                    fields.get("estimated_amount", 0), "estimated_amount", ctx.currency, allow_zero=True
                ),
                "category_type": fields.get("category_type", CategoryType.EXPENSE),
                "category_id": fields.get("category_id"),
                "category_name": optional_text(fields.get("category_name")),
                "project_id": fields.get("project_id"),
            }
            line_item = build_entity(LineItem, data)
            touch = Touch(self.entity, temp_id, temp_id)
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key],
                aggregates={temp_id},
                projected=[line_item],
                payload=line_item.model_dump(mode="json", exclude={"id"}),
                temporary_id=temp_id,
            )

        current: LineItem = self._loaded(ctx, self.entity, mutation.target_id, "id")
        touch = Touch(self.entity, current.id, current.id)

        if mutation.action == MutationAction.DELETE:
            # Dependent records are guarded by the persistence layer
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key],
                aggregates={current.id},
                removed=[touch],
                before=current,
            )

        changes: dict[str, Any] = {}
        for name in self.editable:
            if name not in fields:
                continue
            value = fields[name]
            if name == "estimated_amount":
                value = parse_amount(value, name, ctx.currency, allow_zero=True)
            elif name == "name":
                value = require_text(fields, "name", "Name")
            elif name in ("description", "vendor_name", "category_name"):
                value = optional_text(value)
            changes[name] = value
        changes = _changed(current, changes)
        if not changes:
            raise ValidationError("Nothing to update")

        updated = build_entity(LineItem, {**current.model_dump(), **changes})
        return MutationPlan(
            mutation=mutation,
            touches=[touch],
            lock_keys=[touch.key],
            aggregates={current.id},
            projected=[updated],
            payload=updated.model_dump(mode="json", include=set(changes)),
            before=current,
        )

    def confirm(self, plan, record, ctx, live) -> None:
        store = ctx.store
        action = plan.mutation.action
        if action == MutationAction.CREATE:
            alive = plan.temporary_id is not None and live(plan.temporary_id)
            if plan.temporary_id is not None:
                store.remove(self.entity, plan.temporary_id)
            if alive and record is not None:
                store.load(LedgerAggregate(line_item=record))
        elif action == MutationAction.DELETE:
            store.evict(plan.mutation.target_id)
        elif record is not None and live(record.id):
            store.put(record)

    def refetch_targets(self, plan, record) -> list[int]:
        if plan.mutation.action == MutationAction.DELETE:
            return []
        if plan.mutation.action == MutationAction.CREATE:
            return [record.id] if record is not None else []
        return [plan.mutation.target_id]


# ---------------------------------------------------------------------------
# Purchase requests
# ---------------------------------------------------------------------------


class PurchaseRequestHandler(MutationHandler):
    """Create, edit and delete purchase requests.

    Editing an approved request resets it to Pending in the same write.
    """

    name = "purchase_request"
    entity = EntityKind.PURCHASE_REQUEST

    editable = ("amount", "description", "vendor_name", "line_item_id")

    def plan(self, mutation: Mutation, ctx: HandlerContext) -> MutationPlan:
        _authorize(mutation.actor, lambda a: a.can_manage_purchase_requests, "manage purchase requests")
        fields = mutation.fields

        if mutation.action == MutationAction.CREATE:
            line_item = self._expense_line_item(ctx, fields.get("line_item_id"))
            temp_id = ctx.temporary_ids.next()
            requested_by = fields.get("requested_by")
            if requested_by is None and mutation.actor is not None:
                requested_by = mutation.actor.id
            data = {
                "id": temp_id,
                "line_item_id": line_item.id,
                "amount": parse_amount(fields.get("amount"), "amount", ctx.currency),
                "description": str(fields.get("description") or "").strip(),
                "vendor_name": optional_text(fields.get("vendor_name")),
                "requested_date": fields.get("requested_date") or utcnow(),
                "approval_status": ApprovalStatus.PENDING,
                "requested_by": requested_by,
                "requisition_guid": optional_text(fields.get("requisition_guid")),
            }
            request = build_entity(PurchaseRequest, data)
            touch = Touch(self.entity, temp_id, line_item.id)
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key],
                aggregates={line_item.id},
                projected=[request],
                payload=request.model_dump(mode="json", exclude={"id"}),
                temporary_id=temp_id,
            )

        current: PurchaseRequest = self._loaded(ctx, self.entity, mutation.target_id, "id")
        touch = Touch(self.entity, current.id, current.line_item_id)
        transaction_count = len(ctx.store.transactions_for_request(current.id))

        if mutation.action == MutationAction.DELETE:
            if transaction_count:
                raise ValidationError(
                    f"Purchase request {current.id} has {transaction_count} transaction(s) and cannot be deleted",
                    field="id",
                )
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key],
                aggregates={current.line_item_id},
                removed=[touch],
                before=current,
            )

        changes: dict[str, Any] = {}
        for name in self.editable:
            if name not in fields:
                continue
            value = fields[name]
            if name == "amount":
                value = parse_amount(value, name, ctx.currency)
            elif name == "description":
                value = str(value or "").strip()
            elif name == "vendor_name":
                value = optional_text(value)
            changes[name] = value
        changes = _changed(current, changes)
        if not changes:
            raise ValidationError("Nothing to update")

        aggregates = {current.line_item_id}
        if "line_item_id" in changes:
            if transaction_count:
                raise ValidationError(
                    "A purchase request with transactions cannot move to another line item",
                    field="line_item_id",
                )
            aggregates.add(self._expense_line_item(ctx, changes["line_item_id"]).id)

        updated = build_entity(PurchaseRequest, {**current.model_dump(), **changes})
        reset = ctx.approvals.reset_for_edit(updated)
        payload_fields = set(changes)
        if reset is not updated:
            logger.info("Purchase request %s edited while approved; returning it to Pending", current.id)
            payload_fields |= {"approval_status", "approved_date", "approved_by", "rejection_reason"}
            updated = reset

        return MutationPlan(
            mutation=mutation,
            touches=[touch],
            lock_keys=[touch.key],
            aggregates=aggregates,
            projected=[updated],
            payload=updated.model_dump(mode="json", include=payload_fields),
            before=current,
        )

    def _expense_line_item(self, ctx: HandlerContext, line_item_id: Any) -> LineItem:
        line_item: LineItem = self._loaded(ctx, EntityKind.LINE_ITEM, line_item_id, "line_item_id")
        if not line_item.is_expense:
            raise ValidationError(
                f"Line item {line_item.id} tracks revenue; purchase requests only apply to expense items",
                field="line_item_id",
            )
        return line_item


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionHandler(MutationHandler):
    """Record, edit and delete transactions.

    An expense transaction is gated on its purchase request being Approved
    at creation time, so creating one also locks the request.
    """

    name = "transaction"
    entity = EntityKind.TRANSACTION

    editable = ("amount", "transaction_date", "payment_method", "description", "vendor_name", "payment_reference")

    def plan(self, mutation: Mutation, ctx: HandlerContext) -> MutationPlan:
        _authorize(mutation.actor, lambda a: a.can_manage_transactions, "manage transactions")
        fields = mutation.fields

        if mutation.action == MutationAction.CREATE:
            lock_keys: list[str] = []
            request_id = fields.get("purchase_request_id")
            if request_id is not None:
                request: PurchaseRequest = self._loaded(
                    ctx, EntityKind.PURCHASE_REQUEST, request_id, "purchase_request_id"
                )
                ctx.approvals.check_transaction_allowed(request)
                line_item_id = request.line_item_id
                lock_keys.append(request.key)
            else:
                line_item: LineItem = self._loaded(
                    ctx, EntityKind.LINE_ITEM, fields.get("line_item_id"), "line_item_id"
                )
                if line_item.is_expense:
                    raise ValidationError(
                        "Expense transactions must be recorded against an approved purchase request",
                        field="purchase_request_id",
                    )
                line_item_id = line_item.id

            temp_id = ctx.temporary_ids.next()
            data = {
                "id": temp_id,
                "line_item_id": line_item_id,
                "purchase_request_id": request_id,
                "amount": parse_amount(fields.get("amount"), "amount", ctx.currency),
                "description": optional_text(fields.get("description")),
                "transaction_date": fields.get("transaction_date") or date.today(),
                "payment_method": require_text(fields, "payment_method", "Payment method"),
                "vendor_name": optional_text(fields.get("vendor_name")),
                "payment_reference": optional_text(fields.get("payment_reference")),
            }
            txn = build_entity(Transaction, data)
            touch = Touch(self.entity, temp_id, line_item_id)
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key, *lock_keys],
                aggregates={line_item_id},
                projected=[txn],
                payload=txn.model_dump(mode="json", exclude={"id"}),
                temporary_id=temp_id,
            )

        current: Transaction = self._loaded(ctx, self.entity, mutation.target_id, "id")
        touch = Touch(self.entity, current.id, current.line_item_id)

        if mutation.action == MutationAction.DELETE:
            return MutationPlan(
                mutation=mutation,
                touches=[touch],
                lock_keys=[touch.key],
                aggregates={current.line_item_id},
                removed=[touch],
                before=current,
            )

        changes: dict[str, Any] = {}
        for name in self.editable:
            if name not in fields:
                continue
            value = fields[name]
            if name == "amount":
                value = parse_amount(value, name, ctx.currency)
            elif name == "payment_method":
                value = require_text(fields, name, "Payment method")
            elif name != "transaction_date":
                value = optional_text(value)
            changes[name] = value

        updated = build_entity(Transaction, {**current.model_dump(), **changes})
        changes = _changed(current, {k: getattr(updated, k) for k in changes})
        if not changes:
            raise ValidationError("Nothing to update")

        return MutationPlan(
            mutation=mutation,
            touches=[touch],
            lock_keys=[touch.key],
            aggregates={current.line_item_id},
            projected=[updated],
            payload=updated.model_dump(mode="json", include=set(changes)),
            before=current,
        )


# ---------------------------------------------------------------------------
# Approval transitions
# ---------------------------------------------------------------------------


class ApprovalTransitionHandler(MutationHandler):
    """Approve, reject or re-open a purchase request."""

    name = "approval"
    entity = EntityKind.PURCHASE_REQUEST
    supported_actions = frozenset({MutationAction.TRANSITION})

    def plan(self, mutation: Mutation, ctx: HandlerContext) -> MutationPlan:
        fields = mutation.fields
        current: PurchaseRequest = self._loaded(ctx, self.entity, mutation.target_id, "id")
        try:
            to_status = ApprovalStatus(fields.get("status"))
        except ValueError as e:
            raise ValidationError(f"Unknown approval status: {fields.get('status')!r}", field="approval_status") from e

        reason = optional_text(fields.get("rejection_reason"))
        transaction_count = len(ctx.store.transactions_for_request(current.id))
        ctx.approvals.check_transition(
            current,
            to_status,
            rejection_reason=reason,
            transaction_count=transaction_count,
            actor=mutation.actor,
            require_reason=fields.get("require_reason"),
        )

        actor_id = mutation.actor.id if mutation.actor is not None else fields.get("actor_id")
        projected = ctx.approvals.apply(current, to_status, actor_id=actor_id, rejection_reason=reason)
        touch = Touch(self.entity, current.id, current.line_item_id)
        return MutationPlan(
            mutation=mutation,
            touches=[touch],
            lock_keys=[touch.key],
            aggregates={current.line_item_id},
            projected=[projected],
            payload={
                "status": to_status.value,
                "actor_id": actor_id,
                "rejection_reason": reason,
                "transaction_count": transaction_count,
            },
            before=current,
        )

    async def dispatch(self, plan: MutationPlan, persistence: BasePersistence) -> LedgerEntity | None:
        return await persistence.transition(
            plan.mutation.target_id,
            ApprovalStatus(plan.payload["status"]),
            actor_id=plan.payload["actor_id"],
            rejection_reason=plan.payload["rejection_reason"],
        )

    def confirm(self, plan, record, ctx, live) -> None:
        super().confirm(plan, record, ctx, live)
        if record is not None and plan.before is not None:
            ctx.approvals.record(plan.before, record, plan.payload["transaction_count"])


def default_handlers() -> list[MutationHandler]:
    return [
        LineItemHandler(),
        PurchaseRequestHandler(),
        TransactionHandler(),
        ApprovalTransitionHandler(),
    ]
