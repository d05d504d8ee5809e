"""
Derived-total models — produced by the ledger calculations, never stored.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from budgetpilot.models.ledger import ApprovalStatus, CategoryType


class PurchaseRequestSummary(BaseModel):
    """Spending against one purchase request."""

    model_config = ConfigDict(frozen=True)

    purchase_request_id: int
    line_item_id: int
    approval_status: ApprovalStatus
    amount: int
    transaction_total: int
    transaction_count: int
    remaining_amount: int

    @property
    def is_over_budget(self) -> bool:
        return self.remaining_amount < 0


class LineItemSummary(BaseModel):
    """Estimated vs. actual for one line item."""

    model_config = ConfigDict(frozen=True)

    line_item_id: int
    category_type: CategoryType
    estimated_amount: int
    actual_amount: int
    variance: int
    purchase_request_count: int = 0
    pending_request_count: int = 0
    approved_request_count: int = 0
    transaction_count: int = 0

    @property
    def is_over_budget(self) -> bool:
        """Expense items over their estimate. Revenue above estimate is good news."""
        return self.category_type == CategoryType.EXPENSE and self.variance > 0


class ApprovalImpact(BaseModel):
    """Budget context an approver sees before deciding on a request."""

    model_config = ConfigDict(frozen=True)

    purchase_request_id: int
    line_item_id: int
    line_item_budgeted: int
    line_item_actual_spent: int
    line_item_remaining: int
    approved_requests_total: int
    projected_spent_after_approval: int
    would_be_over_budget: bool
    over_budget_amount: int


class CategorySummary(BaseModel):
    """Roll-up of the line items in one budget category."""

    model_config = ConfigDict(frozen=True)

    category_id: int | None
    category_name: str | None
    category_type: CategoryType
    estimated_amount: int
    actual_amount: int
    variance: int
    line_item_count: int
    utilization_percent: Decimal


class ProjectSummary(BaseModel):
    """Dashboard totals for a project budget."""

    model_config = ConfigDict(frozen=True)

    project_id: int | None
    total_budget: int
    total_actual_expenses: int
    total_expected_income: int
    total_actual_income: int
    expense_utilization_percent: Decimal
    income_progress_percent: Decimal
    categories: list[CategorySummary]

    @property
    def expense_remaining(self) -> int:
        """Signed: negative when spending exceeds the budget."""
        return self.total_budget - self.total_actual_expenses

    @property
    def net_actual(self) -> int:
        return self.total_actual_income - self.total_actual_expenses
