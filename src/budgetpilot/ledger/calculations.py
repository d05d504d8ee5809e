"""
Ledger calculations — pure functions over a snapshot of entities.

Nothing here performs I/O or keeps state. Every derived number the UI shows
(spent, remaining, variance, counts, roll-ups) is recomputed from the child
records so cached totals can never drift from the records they summarise.

Reachability rules:
  - Revenue line items own their transactions directly.
  - Expense line items reach transactions through their purchase requests.
    Transactions stay counted after the request leaves Approved; the gate
    only applies when a transaction is created.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Literal

from budgetpilot.models.ledger import (
    ApprovalStatus,
    CategoryType,
    LedgerAggregate,
    LineItem,
    PurchaseRequest,
    Transaction,
)
from budgetpilot.models.money import percent_of
from budgetpilot.models.summaries import (
    ApprovalImpact,
    CategorySummary,
    LineItemSummary,
    ProjectSummary,
    PurchaseRequestSummary,
)

SortKey = Literal["date", "amount"]


# ---------------------------------------------------------------------------
# Core totals
# ---------------------------------------------------------------------------


def compute_transaction_total(request: PurchaseRequest, transactions: Iterable[Transaction]) -> int:
    """Sum of the transactions recorded against ``request``."""
    return sum(t.amount for t in transactions if t.purchase_request_id == request.id)


def compute_remaining(request: PurchaseRequest, transactions: Iterable[Transaction]) -> int:
    """``amount - transaction_total``. Negative when over the request; never clamped."""
    return request.amount - compute_transaction_total(request, transactions)


def compute_variance(estimated: int, actual: int) -> int:
    """``actual - estimated``. Positive means more than budgeted."""
    return actual - estimated


def compute_line_item_actual(
    line_item: LineItem,
    transactions: Iterable[Transaction],
    purchase_requests: Iterable[PurchaseRequest] | None = None,
) -> int:
    """Sum of every transaction reachable from ``line_item``.

    For expense items, when ``purchase_requests`` is given only transactions
    of those requests (that belong to this line item) are counted; otherwise
    the transaction's own ``line_item_id`` decides.
    """
    if line_item.category_type == CategoryType.REVENUE:
        return sum(t.amount for t in transactions if t.line_item_id == line_item.id and t.is_direct)

    if purchase_requests is None:
        return sum(t.amount for t in transactions if t.line_item_id == line_item.id and not t.is_direct)

    request_ids = {r.id for r in purchase_requests if r.line_item_id == line_item.id}
    return sum(t.amount for t in transactions if t.purchase_request_id in request_ids)


def compute_line_item_actual_from_requests(summaries: Iterable[PurchaseRequestSummary]) -> int:
    """Roll an expense line item up from its requests' ``transaction_total``.

    Equal to :func:`compute_line_item_actual` over the raw transactions.
    """
    return sum(s.transaction_total for s in summaries)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def sort_purchase_requests(requests: Iterable[PurchaseRequest], by: SortKey = "date") -> list[PurchaseRequest]:
    """Newest (or largest) first; ties broken by id ascending."""
    by_id = sorted(requests, key=lambda r: r.id)
    if by == "amount":
        return sorted(by_id, key=lambda r: r.amount, reverse=True)
    return sorted(by_id, key=lambda r: _instant(r.requested_date), reverse=True)


def sort_transactions(transactions: Iterable[Transaction], by: SortKey = "date") -> list[Transaction]:
    """Newest (or largest) first; ties broken by id ascending."""
    by_id = sorted(transactions, key=lambda t: t.id)
    if by == "amount":
        return sorted(by_id, key=lambda t: t.amount, reverse=True)
    return sorted(by_id, key=lambda t: t.transaction_date, reverse=True)


def _instant(value: datetime) -> float:
    return value.timestamp()


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def summarize_purchase_request(request: PurchaseRequest, transactions: Iterable[Transaction]) -> PurchaseRequestSummary:
    """Transaction total, count and remaining amount for one request."""
    own = [t for t in transactions if t.purchase_request_id == request.id]
    total = sum(t.amount for t in own)
    return PurchaseRequestSummary(
        purchase_request_id=request.id,
        line_item_id=request.line_item_id,
        approval_status=request.approval_status,
        amount=request.amount,
        transaction_total=total,
        transaction_count=len(own),
        remaining_amount=request.amount - total,
    )


def summarize_line_item(
    line_item: LineItem,
    purchase_requests: Iterable[PurchaseRequest],
    transactions: Iterable[Transaction],
) -> LineItemSummary:
    """Actual amount, variance and request/transaction counts for one line item."""
    requests = [r for r in purchase_requests if r.line_item_id == line_item.id]
    txns = list(transactions)
    actual = compute_line_item_actual(line_item, txns, requests)

    if line_item.category_type == CategoryType.REVENUE:
        reachable = [t for t in txns if t.line_item_id == line_item.id and t.is_direct]
    else:
        request_ids = {r.id for r in requests}
        reachable = [t for t in txns if t.purchase_request_id in request_ids]

    return LineItemSummary(
        line_item_id=line_item.id,
        category_type=line_item.category_type,
        estimated_amount=line_item.estimated_amount,
        actual_amount=actual,
        variance=compute_variance(line_item.estimated_amount, actual),
        purchase_request_count=len(requests),
        pending_request_count=sum(1 for r in requests if r.approval_status == ApprovalStatus.PENDING),
        approved_request_count=sum(1 for r in requests if r.approval_status == ApprovalStatus.APPROVED),
        transaction_count=len(reachable),
    )


def summarize_aggregate(aggregate: LedgerAggregate) -> LineItemSummary:
    return summarize_line_item(aggregate.line_item, aggregate.purchase_requests, aggregate.transactions)


def compute_approval_impact(
    line_item: LineItem,
    purchase_requests: Iterable[PurchaseRequest],
    transactions: Iterable[Transaction],
    request: PurchaseRequest,
) -> ApprovalImpact:
    """What approving ``request`` would do to its line item's budget.

    Each other approved request commits the larger of its ceiling and what
    has already been spent against it; non-approved requests commit only
    what was already spent. The request under review commits its ceiling
    (or its spending, if larger).
    """
    txns = list(transactions)
    requests = [r for r in purchase_requests if r.line_item_id == line_item.id]
    actual = compute_line_item_actual(line_item, txns, requests)

    approved_total = 0
    committed = 0
    for other in requests:
        if other.id == request.id:
            continue
        spent = compute_transaction_total(other, txns)
        if other.approval_status == ApprovalStatus.APPROVED:
            approved_total += other.amount
            committed += max(other.amount, spent)
        else:
            committed += spent

    projected = committed + max(request.amount, compute_transaction_total(request, txns))
    over = projected - line_item.estimated_amount

    return ApprovalImpact(
        purchase_request_id=request.id,
        line_item_id=line_item.id,
        line_item_budgeted=line_item.estimated_amount,
        line_item_actual_spent=actual,
        line_item_remaining=line_item.estimated_amount - actual,
        approved_requests_total=approved_total,
        projected_spent_after_approval=projected,
        would_be_over_budget=over > 0,
        over_budget_amount=max(over, 0),
    )


# ---------------------------------------------------------------------------
# Roll-ups
# ---------------------------------------------------------------------------


def summarize_category(aggregates: Iterable[LedgerAggregate]) -> CategorySummary:
    """Totals for line items that share one category.

    Raises:
        ValueError: If ``aggregates`` is empty or mixes categories.
    """
    items = list(aggregates)
    if not items:
        raise ValueError("A category summary needs at least one line item")

    first = items[0].line_item
    for agg in items[1:]:
        li = agg.line_item
        if (li.category_id, li.category_type) != (first.category_id, first.category_type):
            raise ValueError(f"Line item {li.id} is not in category {first.category_id}")

    estimated = sum(a.line_item.estimated_amount for a in items)
    actual = sum(summarize_aggregate(a).actual_amount for a in items)
    return CategorySummary(
        category_id=first.category_id,
        category_name=first.category_name,
        category_type=first.category_type,
        estimated_amount=estimated,
        actual_amount=actual,
        variance=compute_variance(estimated, actual),
        line_item_count=len(items),
        utilization_percent=percent_of(actual, estimated),
    )


def summarize_project(aggregates: Iterable[LedgerAggregate], project_id: int | None = None) -> ProjectSummary:
    """Expense and income totals across every line item of a project.

    Categories come back expense first, then revenue, each in category id order.
    """
    groups: dict[tuple[CategoryType, int | None], list[LedgerAggregate]] = {}
    for agg in aggregates:
        li = agg.line_item
        if project_id is not None and li.project_id not in (None, project_id):
            continue
        groups.setdefault((li.category_type, li.category_id), []).append(agg)

    ordered = sorted(
        groups.items(),
        key=lambda kv: (kv[0][0] != CategoryType.EXPENSE, kv[0][1] is None, kv[0][1] or 0),
    )
    categories = [summarize_category(group) for _, group in ordered]

    expenses = [c for c in categories if c.category_type == CategoryType.EXPENSE]
    revenue = [c for c in categories if c.category_type == CategoryType.REVENUE]
    total_budget = sum(c.estimated_amount for c in expenses)
    total_expenses = sum(c.actual_amount for c in expenses)
    expected_income = sum(c.estimated_amount for c in revenue)
    actual_income = sum(c.actual_amount for c in revenue)

    return ProjectSummary(
        project_id=project_id,
        total_budget=total_budget,
        total_actual_expenses=total_expenses,
        total_expected_income=expected_income,
        total_actual_income=actual_income,
        expense_utilization_percent=percent_of(total_expenses, total_budget),
        income_progress_percent=percent_of(actual_income, expected_income),
        categories=categories,
    )
