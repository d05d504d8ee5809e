"""
Tests for the BudgetPilot facade.
"""

from unittest.mock import AsyncMock, patch

import pytest

from budgetpilot import BudgetPilot, BudgetPilotConfig
from budgetpilot.exceptions import IllegalTransitionError, ValidationError
from budgetpilot.models.ledger import ApprovalStatus
from budgetpilot.persistence.memory import InMemoryPersistence
from tests.factories import EXPENSE_ID, REVENUE_ID, make_request, make_transaction


@pytest.fixture
def pilot(persistence, admin) -> BudgetPilot:
    return BudgetPilot.from_config(persistence=persistence, actor=admin)


class TestSetup:
    def test_lazy_setup_uses_configured_backend(self) -> None:
        pilot = BudgetPilot(config=BudgetPilotConfig())
        assert isinstance(pilot.coordinator.persistence, InMemoryPersistence)
        assert pilot.persistence is pilot.coordinator.persistence
        assert pilot.coordinator.store is pilot.store

    def test_overrides_reach_components(self, persistence) -> None:
        pilot = BudgetPilot.from_config(
            persistence=persistence,
            coordinator={"single_flight": "queue"},
            approval={"require_rejection_reason": False},
        )
        assert pilot.config.coordinator.single_flight == "queue"
        assert pilot.persistence is persistence


class TestIntents:
    @pytest.mark.asyncio
    async def test_full_request_lifecycle(self, pilot) -> None:
        await pilot.load_line_item(EXPENSE_ID)

        created = await pilot.create_purchase_request(EXPENSE_ID, "400.00", description="Wireless microphones")
        request_id = created.entity_id
        assert (await pilot.approve(request_id)).succeeded
        spent = await pilot.add_transaction("150.00", "Check", purchase_request_id=request_id)
        assert spent.succeeded

        summary = pilot.store.purchase_request_summary(request_id)
        assert summary.transaction_total == 15000
        assert summary.remaining_amount == 25000

        assert (await pilot.reject(request_id, "Vendor changed")).succeeded
        assert pilot.store.purchase_request_summary(request_id).transaction_total == 15000
        with pytest.raises(ValidationError):
            await pilot.add_transaction("20.00", "Cash", purchase_request_id=request_id)

        reopened = await pilot.reopen(request_id)
        assert reopened.succeeded
        assert pilot.store.get_purchase_request(request_id).approval_status == ApprovalStatus.PENDING
        assert [d.to_status for d in pilot.approvals.decisions] == [
            ApprovalStatus.APPROVED,
            ApprovalStatus.REJECTED,
            ApprovalStatus.PENDING,
        ]

    @pytest.mark.asyncio
    async def test_revenue_and_edits(self, pilot) -> None:
        await pilot.load_line_item(REVENUE_ID)
        added = await pilot.add_transaction("300", "Online", line_item_id=REVENUE_ID)
        assert (await pilot.update_transaction(added.entity_id, amount="320")).succeeded
        assert pilot.store.line_item_summary(REVENUE_ID).actual_amount == 32000
        assert (await pilot.delete_transaction(added.entity_id)).succeeded
        assert pilot.store.line_item_summary(REVENUE_ID).actual_amount == 0

    @pytest.mark.asyncio
    async def test_line_item_intents(self, pilot) -> None:
        created = await pilot.create_line_item("Lighting", "250")
        line_item_id = created.entity_id
        assert (await pilot.update_line_item(line_item_id, estimated_amount="300")).succeeded
        assert pilot.store.get_line_item(line_item_id).estimated_amount == 30000
        assert (await pilot.delete_line_item(line_item_id)).succeeded
        assert not pilot.store.is_loaded(line_item_id)

    @pytest.mark.asyncio
    async def test_blocked_regression(self, persistence, admin) -> None:
        persistence.seed([make_request(10, status=ApprovalStatus.APPROVED), make_transaction(20, 500, 10)])
        pilot = BudgetPilot.from_config(
            persistence=persistence,
            actor=admin,
            approval={"block_regression_with_transactions": True},
        )
        await pilot.load_line_item(EXPENSE_ID)
        with pytest.raises(IllegalTransitionError):
            await pilot.reopen(10)


class TestPendingAndPolling:
    @pytest.mark.asyncio
    async def test_pending_approvals_with_impact(self, pilot, persistence) -> None:
        persistence.seed([
            make_request(10, amount=60000, status=ApprovalStatus.APPROVED),
            make_request(11, amount=50000),
        ])
        found = await pilot.pending_approvals()
        assert [request.id for request, _ in found] == [11]
        impact = found[0][1]
        assert impact.projected_spent_after_approval == 110000
        assert impact.would_be_over_budget
        assert pilot.store.is_loaded(EXPENSE_ID)

    @pytest.mark.asyncio
    async def test_polling_follows_loaded_items(self, persistence, admin) -> None:
        pilot = BudgetPilot.from_config(
            persistence=persistence,
            actor=admin,
            polling={"enabled": True, "interval_seconds": 0.01},
        )
        await pilot.load_line_item(EXPENSE_ID)
        assert pilot.poller.running == [EXPENSE_ID]

        await pilot.evict_line_item(EXPENSE_ID)
        assert pilot.poller.running == []
        assert not pilot.store.is_loaded(EXPENSE_ID)
        await pilot.close()

    @pytest.mark.asyncio
    async def test_close_releases_backend(self, pilot, persistence) -> None:
        with patch.object(persistence, "close", new_callable=AsyncMock) as close:
            await pilot.close()
        close.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("budgetpilot.pilot.PollReconciler.start")
    async def test_polling_off_by_default(self, start, pilot) -> None:
        await pilot.load_line_item(EXPENSE_ID)
        start.assert_not_called()
