"""
Tests for the pure ledger calculations.
"""

import random
from decimal import Decimal

import pytest

from budgetpilot.ledger.calculations import (
    compute_approval_impact,
    compute_line_item_actual,
    compute_line_item_actual_from_requests,
    compute_remaining,
    compute_transaction_total,
    compute_variance,
    sort_purchase_requests,
    sort_transactions,
    summarize_category,
    summarize_line_item,
    summarize_project,
    summarize_purchase_request,
)
from budgetpilot.models.ledger import ApprovalStatus, CategoryType, LedgerAggregate
from tests.factories import make_line_item, make_request, make_transaction


def _random_expense_ledger(seed: int):
    rng = random.Random(seed)
    line_item = make_line_item(1, rng.randint(0, 10_000_00))
    requests = [
        make_request(i, amount=rng.randint(1, 5_000_00), status=rng.choice(list(ApprovalStatus)))
        for i in range(1, rng.randint(1, 8) + 1)
    ]
    txns = []
    next_id = 100
    for request in requests:
        for _ in range(rng.randint(0, 6)):
            txns.append(make_transaction(next_id, rng.randint(1, 2_000_00), request.id, day=rng.randint(1, 28)))
            next_id += 1
    return line_item, requests, txns


class TestTotals:
    def test_transaction_total_only_counts_own(self) -> None:
        request = make_request(1)
        txns = [make_transaction(10, 15000, 1), make_transaction(11, 5000, 2)]
        assert compute_transaction_total(request, txns) == 15000

    def test_remaining_law(self) -> None:
        request = make_request(1, amount=40000)
        txns = [make_transaction(10, 15000, 1)]
        assert compute_remaining(request, txns) == 25000

    def test_remaining_goes_negative(self) -> None:
        request = make_request(1, amount=40000)
        txns = [make_transaction(10, 30000, 1), make_transaction(11, 15000, 1)]
        assert compute_remaining(request, txns) == -5000

    def test_variance_sign(self) -> None:
        assert compute_variance(100000, 15000) == -85000
        assert compute_variance(50000, 60000) == 10000

    def test_revenue_counts_direct_transactions_only(self) -> None:
        line_item = make_line_item(2, 50000, CategoryType.REVENUE)
        txns = [
            make_transaction(1, 30000, line_item_id=2),
            make_transaction(2, 20000, line_item_id=2),
            make_transaction(3, 99999, line_item_id=3),
        ]
        assert compute_line_item_actual(line_item, txns) == 50000

    def test_expense_without_request_list_uses_line_item_id(self) -> None:
        line_item = make_line_item(1)
        txns = [make_transaction(1, 100, 5), make_transaction(2, 200, 6, line_item_id=9)]
        assert compute_line_item_actual(line_item, txns) == 100

    def test_expense_counts_transactions_of_non_approved_requests(self) -> None:
        line_item = make_line_item(1)
        requests = [make_request(1, status=ApprovalStatus.REJECTED)]
        txns = [make_transaction(10, 15000, 1)]
        assert compute_line_item_actual(line_item, txns, requests) == 15000


class TestRollUpConsistency:
    @pytest.mark.parametrize("seed", range(25))
    def test_roll_up_matches_raw_sum(self, seed) -> None:
        line_item, requests, txns = _random_expense_ledger(seed)
        summaries = [summarize_purchase_request(r, txns) for r in requests]
        raw = compute_line_item_actual(line_item, txns, requests)
        assert compute_line_item_actual_from_requests(summaries) == raw
        assert raw == sum(t.amount for t in txns)

    @pytest.mark.parametrize("seed", range(25))
    def test_remaining_law_holds_exactly(self, seed) -> None:
        _, requests, txns = _random_expense_ledger(seed)
        for request in requests:
            summary = summarize_purchase_request(request, txns)
            assert summary.remaining_amount == request.amount - summary.transaction_total
            assert summary.is_over_budget == (summary.remaining_amount < 0)


class TestSorting:
    def test_requests_newest_first_ties_by_id(self) -> None:
        requests = [make_request(3, days=0), make_request(1, days=2), make_request(2, days=0)]
        assert [r.id for r in sort_purchase_requests(requests)] == [1, 2, 3]

    def test_requests_by_amount(self) -> None:
        requests = [make_request(1, amount=100), make_request(2, amount=300), make_request(3, amount=300)]
        assert [r.id for r in sort_purchase_requests(requests, by="amount")] == [2, 3, 1]

    def test_transactions_by_date_then_id(self) -> None:
        txns = [make_transaction(5, 100, 1, day=3), make_transaction(2, 100, 1, day=3), make_transaction(9, 100, 1, day=7)]
        assert [t.id for t in sort_transactions(txns)] == [9, 2, 5]

    def test_transactions_by_amount(self) -> None:
        txns = [make_transaction(1, 100, 1), make_transaction(2, 500, 1), make_transaction(3, 250, 1)]
        assert [t.id for t in sort_transactions(txns, by="amount")] == [2, 3, 1]


class TestSummaries:
    def test_line_item_summary_counts(self) -> None:
        line_item = make_line_item(1)
        requests = [
            make_request(1, status=ApprovalStatus.APPROVED),
            make_request(2),
            make_request(3, status=ApprovalStatus.REJECTED),
        ]
        txns = [make_transaction(10, 15000, 1), make_transaction(11, 2500, 1)]
        summary = summarize_line_item(line_item, requests, txns)
        assert summary.actual_amount == 17500
        assert summary.variance == 17500 - 100000
        assert summary.purchase_request_count == 3
        assert summary.pending_request_count == 1
        assert summary.approved_request_count == 1
        assert summary.transaction_count == 2
        assert not summary.is_over_budget

    def test_revenue_above_estimate_is_not_over_budget(self) -> None:
        line_item = make_line_item(2, 50000, CategoryType.REVENUE)
        summary = summarize_line_item(line_item, [], [make_transaction(1, 60000, line_item_id=2)])
        assert summary.variance == 10000
        assert not summary.is_over_budget


class TestApprovalImpact:
    def test_projects_commitments(self) -> None:
        line_item = make_line_item(1, 100000)
        approved = make_request(1, amount=50000, status=ApprovalStatus.APPROVED)
        pending = make_request(2, amount=60000)
        txns = [make_transaction(10, 20000, 1)]
        impact = compute_approval_impact(line_item, [approved, pending], txns, pending)
        assert impact.line_item_actual_spent == 20000
        assert impact.line_item_remaining == 80000
        assert impact.approved_requests_total == 50000
        assert impact.projected_spent_after_approval == 110000
        assert impact.would_be_over_budget
        assert impact.over_budget_amount == 10000

    def test_overspent_approved_request_commits_its_spending(self) -> None:
        line_item = make_line_item(1, 100000)
        approved = make_request(1, amount=10000, status=ApprovalStatus.APPROVED)
        pending = make_request(2, amount=20000)
        txns = [make_transaction(10, 30000, 1)]
        impact = compute_approval_impact(line_item, [approved, pending], txns, pending)
        assert impact.projected_spent_after_approval == 50000
        assert not impact.would_be_over_budget
        assert impact.over_budget_amount == 0


class TestRollUps:
    def test_scenario_four_variances_are_independent(self) -> None:
        expense = LedgerAggregate(
            line_item=make_line_item(1, 50000, category_id=20),
            purchase_requests=[make_request(1, amount=60000, status=ApprovalStatus.APPROVED)],
            transactions=[make_transaction(10, 35000, 1), make_transaction(11, 25000, 1)],
        )
        revenue = LedgerAggregate(
            line_item=make_line_item(2, 50000, CategoryType.REVENUE, category_id=20),
            transactions=[make_transaction(20, 30000, line_item_id=2), make_transaction(21, 20000, line_item_id=2)],
        )
        project = summarize_project([revenue, expense])
        assert [c.category_type for c in project.categories] == [CategoryType.EXPENSE, CategoryType.REVENUE]
        expense_cat, revenue_cat = project.categories
        assert expense_cat.variance == 10000
        assert revenue_cat.variance == 0
        assert project.total_budget == 50000
        assert project.total_actual_expenses == 60000
        assert project.expense_remaining == -10000
        assert project.expense_utilization_percent == Decimal("120.0")
        assert project.income_progress_percent == Decimal("100.0")
        assert project.net_actual == -10000

    def test_category_rejects_mixed_input(self) -> None:
        a = LedgerAggregate(line_item=make_line_item(1, category_id=1))
        b = LedgerAggregate(line_item=make_line_item(2, category_id=2))
        with pytest.raises(ValueError):
            summarize_category([a, b])

    def test_category_rejects_empty(self) -> None:
        with pytest.raises(ValueError):
            summarize_category([])

    def test_project_filter(self) -> None:
        mine = LedgerAggregate(line_item=make_line_item(1, 1000, project_id=1))
        other = LedgerAggregate(line_item=make_line_item(2, 9000, project_id=2))
        assert summarize_project([mine, other], project_id=1).total_budget == 1000
