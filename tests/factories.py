"""Record builders shared by the test modules."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from budgetpilot.models.ledger import (
    ApprovalStatus,
    CategoryType,
    LineItem,
    PurchaseRequest,
    Transaction,
)

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

EXPENSE_ID = 1
REVENUE_ID = 2


def make_line_item(
    line_item_id: int = EXPENSE_ID,
    estimated: int = 100000,
    category_type: CategoryType = CategoryType.EXPENSE,
    **kwargs,
) -> LineItem:
    kwargs.setdefault("name", f"Line item {line_item_id}")
    kwargs.setdefault("category_id", 10)
    kwargs.setdefault("category_name", "Facilities")
    kwargs.setdefault("project_id", 1)
    return LineItem(id=line_item_id, estimated_amount=estimated, category_type=category_type, **kwargs)


def make_request(
    request_id: int,
    line_item_id: int = EXPENSE_ID,
    amount: int = 40000,
    status: ApprovalStatus = ApprovalStatus.PENDING,
    days: int = 0,
    **kwargs,
) -> PurchaseRequest:
    if status == ApprovalStatus.APPROVED:
        kwargs.setdefault("approved_date", NOW)
    if status == ApprovalStatus.REJECTED:
        kwargs.setdefault("rejection_reason", "Over budget")
    return PurchaseRequest(
        id=request_id,
        line_item_id=line_item_id,
        amount=amount,
        description=kwargs.pop("description", f"Request {request_id}"),
        requested_date=NOW + timedelta(days=days),
        approval_status=status,
        **kwargs,
    )


def make_transaction(
    transaction_id: int,
    amount: int,
    purchase_request_id: int | None = None,
    line_item_id: int = EXPENSE_ID,
    day: int = 1,
    **kwargs,
) -> Transaction:
    kwargs.setdefault("payment_method", "Check")
    return Transaction(
        id=transaction_id,
        line_item_id=line_item_id,
        purchase_request_id=purchase_request_id,
        amount=amount,
        transaction_date=date(2024, 3, day),
        **kwargs,
    )
