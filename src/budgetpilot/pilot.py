"""
BudgetPilot — main entry point.

The BudgetPilot class wires configuration, the ledger store, the
persistence backend, the approval state machine, the mutation coordinator
and the poll reconciler together, and offers one method per user intent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from budgetpilot.config import BudgetPilotConfig
from budgetpilot.execution.approval import ApprovalStateMachine
from budgetpilot.execution.coordinator import MutationCoordinator
from budgetpilot.execution.polling import PollReconciler
from budgetpilot.ledger.store import LedgerStore
from budgetpilot.models.actors import Actor
from budgetpilot.models.ledger import (
    ApprovalStatus,
    EntityKind,
    LedgerAggregate,
    PurchaseRequest,
)
from budgetpilot.models.mutations import Mutation, MutationAction, MutationResult
from budgetpilot.models.summaries import ApprovalImpact
from budgetpilot.persistence.base import BasePersistence
from budgetpilot.persistence.registry import create_persistence

logger = logging.getLogger("budgetpilot")


@dataclass
class BudgetPilot:
    """Top-level facade over the budget ledger.

    Usage::

        from budgetpilot import BudgetPilot

        pilot = BudgetPilot.from_config("budgetpilot.yaml", actor=me)
        await pilot.load_line_item(7)
        result = await pilot.create_purchase_request(7, "400.00", description="Hymnals")
        await pilot.approve(result.entity_id)
        await pilot.add_transaction("150.00", "Check", purchase_request_id=result.entity_id)
        print(pilot.store.line_item_summary(7))

    Every mutating method returns the coordinator's ``MutationResult`` and
    raises ``ValidationError`` or ``BusyError`` before anything changes.
    """

    config: BudgetPilotConfig
    persistence: BasePersistence | None = None
    actor: Actor | None = None
    store: LedgerStore = field(default_factory=LedgerStore)
    _coordinator: MutationCoordinator | None = field(default=None, init=False, repr=False)
    _poller: PollReconciler | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(
        cls,
        config_path: str | None = None,
        *,
        persistence: BasePersistence | None = None,
        actor: Actor | None = None,
        **overrides: Any,
    ) -> BudgetPilot:
        """Create a BudgetPilot instance from a config file or keyword arguments."""
        config = BudgetPilotConfig.load(config_path, **overrides)
        instance = cls(config=config, persistence=persistence, actor=actor)
        instance._setup()
        return instance

    def _setup(self) -> None:
        if self.persistence is None:
            self.persistence = create_persistence(self.config.persistence)
        approvals = ApprovalStateMachine(
            require_rejection_reason=self.config.approval.require_rejection_reason,
            block_regression_with_transactions=self.config.approval.block_regression_with_transactions,
        )
        self._coordinator = MutationCoordinator(
            self.store,
            self.persistence,
            approvals=approvals,
            single_flight=self.config.coordinator.single_flight,
            write_timeout=self.config.coordinator.write_timeout,
            read_timeout=self.config.coordinator.read_timeout,
            currency=self.config.currency,
        )
        self._poller = PollReconciler(
            self.store,
            self.persistence,
            interval=self.config.polling.interval_seconds,
            timeout=self.config.polling.timeout,
            protected=self._coordinator.protected_keys,
        )
        logger.info(
            "BudgetPilot initialized (backend=%s, single_flight=%s)",
            self.persistence.name,
            self.config.coordinator.single_flight,
        )

    @property
    def coordinator(self) -> MutationCoordinator:
        if self._coordinator is None:
            self._setup()
        assert self._coordinator is not None
        return self._coordinator

    @property
    def poller(self) -> PollReconciler:
        if self._poller is None:
            self._setup()
        assert self._poller is not None
        return self._poller

    @property
    def approvals(self) -> ApprovalStateMachine:
        return self.coordinator.approvals

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_line_item(self, line_item_id: int) -> LedgerAggregate | None:
        """Fetch a line item with its requests and transactions into the store."""
        aggregate = await self.coordinator.load(line_item_id)
        if self.config.polling.enabled:
            self.poller.start(line_item_id)
        return aggregate

    async def evict_line_item(self, line_item_id: int) -> None:
        """Forget a line item (the user navigated away). In-flight writes still resolve."""
        await self.poller.stop(line_item_id)
        self.store.evict(line_item_id)

    async def pending_approvals(
        self,
        project_id: int | None = None,
        requested_by: int | None = None,
    ) -> list[tuple[PurchaseRequest, ApprovalImpact | None]]:
        """Requests awaiting a decision, each with its budget impact."""
        assert self.persistence is not None
        requests = await self.persistence.list_pending_requests(project_id=project_id, requested_by=requested_by)
        found = []
        for request in requests:
            if not self.store.is_loaded(request.line_item_id):
                await self.coordinator.load(request.line_item_id)
            found.append((request, self.store.approval_impact(request.id)))
        return found

    async def close(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
        if self.persistence is not None:
            await self.persistence.close()

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def submit(
        self,
        entity: EntityKind,
        action: MutationAction,
        target_id: int | None = None,
        **fields: Any,
    ) -> MutationResult:
        mutation = Mutation(entity=entity, action=action, target_id=target_id, fields=fields, actor=self.actor)
        return await self.coordinator.submit(mutation)

    async def create_line_item(self, name: str, estimated_amount: Any = 0, **fields: Any) -> MutationResult:
        return await self.submit(
            EntityKind.LINE_ITEM, MutationAction.CREATE, name=name, estimated_amount=estimated_amount, **fields
        )

    async def update_line_item(self, line_item_id: int, **changes: Any) -> MutationResult:
        return await self.submit(EntityKind.LINE_ITEM, MutationAction.UPDATE, line_item_id, **changes)

    async def delete_line_item(self, line_item_id: int) -> MutationResult:
        return await self.submit(EntityKind.LINE_ITEM, MutationAction.DELETE, line_item_id)

    async def create_purchase_request(
        self,
        line_item_id: int,
        amount: Any,
        description: str = "",
        **fields: Any,
    ) -> MutationResult:
        return await self.submit(
            EntityKind.PURCHASE_REQUEST,
            MutationAction.CREATE,
            line_item_id=line_item_id,
            amount=amount,
            description=description,
            **fields,
        )

    async def update_purchase_request(self, request_id: int, **changes: Any) -> MutationResult:
        return await self.submit(EntityKind.PURCHASE_REQUEST, MutationAction.UPDATE, request_id, **changes)

    async def delete_purchase_request(self, request_id: int) -> MutationResult:
        return await self.submit(EntityKind.PURCHASE_REQUEST, MutationAction.DELETE, request_id)

    async def approve(self, request_id: int) -> MutationResult:
        return await self._transition(request_id, ApprovalStatus.APPROVED)

    async def reject(self, request_id: int, reason: str | None = None, require_reason: bool | None = None) -> MutationResult:
        return await self._transition(
            request_id, ApprovalStatus.REJECTED, rejection_reason=reason, require_reason=require_reason
        )

    async def reopen(self, request_id: int) -> MutationResult:
        """Send a decided request back to Pending."""
        return await self._transition(request_id, ApprovalStatus.PENDING)

    async def add_transaction(
        self,
        amount: Any,
        payment_method: str,
        *,
        purchase_request_id: int | None = None,
        line_item_id: int | None = None,
        **fields: Any,
    ) -> MutationResult:
        """Record spending against an approved request, or income on a revenue line item."""
        return await self.submit(
            EntityKind.TRANSACTION,
            MutationAction.CREATE,
            amount=amount,
            payment_method=payment_method,
            purchase_request_id=purchase_request_id,
            line_item_id=line_item_id,
            **fields,
        )

    async def update_transaction(self, transaction_id: int, **changes: Any) -> MutationResult:
        return await self.submit(EntityKind.TRANSACTION, MutationAction.UPDATE, transaction_id, **changes)

    async def delete_transaction(self, transaction_id: int) -> MutationResult:
        return await self.submit(EntityKind.TRANSACTION, MutationAction.DELETE, transaction_id)

    async def _transition(self, request_id: int, status: ApprovalStatus, **fields: Any) -> MutationResult:
        return await self.submit(
            EntityKind.PURCHASE_REQUEST, MutationAction.TRANSITION, request_id, status=status.value, **fields
        )
