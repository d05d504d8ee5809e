"""
Ledger data models — line items, purchase requests, transactions.

Amounts are integer minor units (see ``budgetpilot.models.money``).
Entities are immutable; every change produces a new copy so the store can
keep exact pre-mutation snapshots.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CategoryType(str, Enum):
    """Whether a budget category tracks spending or income."""

    EXPENSE = "expense"
    REVENUE = "revenue"


class ApprovalStatus(str, Enum):
    """Purchase request approval states."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class EntityKind(str, Enum):
    """The three entity types the ledger tracks."""

    LINE_ITEM = "line_item"
    PURCHASE_REQUEST = "purchase_request"
    TRANSACTION = "transaction"


def entity_key(kind: EntityKind, entity_id: int) -> str:
    """Stable key used for snapshots, locks and pending markers."""
    return f"{kind.value}:{entity_id}"


class LineItem(BaseModel):
    """A budget bucket within one category of a project."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str | None = None
    vendor_name: str | None = None
    estimated_amount: int = Field(default=0, ge=0, description="Budgeted amount in minor units")
    category_type: CategoryType = CategoryType.EXPENSE
    category_id: int | None = None
    category_name: str | None = None
    project_id: int | None = None

    @property
    def kind(self) -> EntityKind:
        return EntityKind.LINE_ITEM

    @property
    def key(self) -> str:
        return entity_key(EntityKind.LINE_ITEM, self.id)

    @property
    def is_expense(self) -> bool:
        return self.category_type == CategoryType.EXPENSE


class PurchaseRequest(BaseModel):
    """A request to spend up to ``amount`` against an expense line item."""

    model_config = ConfigDict(frozen=True)

    id: int
    line_item_id: int
    amount: int = Field(gt=0, description="Requested ceiling in minor units")
    description: str = ""
    vendor_name: str | None = None
    requested_date: datetime
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_date: datetime | None = None
    rejection_reason: str | None = None
    requested_by: int | None = None
    approved_by: int | None = None
    requisition_guid: str | None = None

    @property
    def kind(self) -> EntityKind:
        return EntityKind.PURCHASE_REQUEST

    @property
    def key(self) -> str:
        return entity_key(EntityKind.PURCHASE_REQUEST, self.id)

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


class Transaction(BaseModel):
    """A recorded movement of money.

    Expense transactions hang off an approved purchase request; revenue
    transactions attach directly to their line item and leave
    ``purchase_request_id`` empty. ``line_item_id`` is always set.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    line_item_id: int
    purchase_request_id: int | None = None
    amount: int = Field(gt=0, description="Always positive; direction comes from the line item")
    description: str | None = None
    transaction_date: date
    payment_method: str
    vendor_name: str | None = None
    payment_reference: str | None = None

    @property
    def kind(self) -> EntityKind:
        return EntityKind.TRANSACTION

    @property
    def key(self) -> str:
        return entity_key(EntityKind.TRANSACTION, self.id)

    @property
    def is_direct(self) -> bool:
        """True for revenue transactions recorded straight on a line item."""
        return self.purchase_request_id is None


LedgerEntity = LineItem | PurchaseRequest | Transaction

ENTITY_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.LINE_ITEM: LineItem,
    EntityKind.PURCHASE_REQUEST: PurchaseRequest,
    EntityKind.TRANSACTION: Transaction,
}


class LedgerAggregate(BaseModel):
    """One line item with every purchase request and transaction it owns.

    This is the unit the persistence layer returns on refetch and the unit
    the poll reconciler refreshes.
    """

    model_config = ConfigDict(frozen=True)

    line_item: LineItem
    purchase_requests: list[PurchaseRequest] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_ownership(self) -> LedgerAggregate:
        owner = self.line_item.id
        request_ids = set()
        for request in self.purchase_requests:
            if request.line_item_id != owner:
                raise ValueError(f"Purchase request {request.id} belongs to line item {request.line_item_id}, not {owner}")
            request_ids.add(request.id)
        for txn in self.transactions:
            if txn.line_item_id != owner:
                raise ValueError(f"Transaction {txn.id} belongs to line item {txn.line_item_id}, not {owner}")
            if txn.purchase_request_id is not None and txn.purchase_request_id not in request_ids:
                raise ValueError(f"Transaction {txn.id} references unknown purchase request {txn.purchase_request_id}")
        return self

    @property
    def line_item_id(self) -> int:
        return self.line_item.id

    def records(self) -> list[LedgerEntity]:
        """All entities in the aggregate, owner first."""
        return [self.line_item, *self.purchase_requests, *self.transactions]
