"""
Approval state machine — legal status changes for purchase requests.

States are Pending (initial), Approved and Rejected. There is no terminal
state: every state can reach every other in one step.

  Pending  → Approved   stamp approved_date, clear rejection_reason
  Pending  → Rejected   needs a reason on the approver path; clear approved_date
  Approved → Pending    clear approved_date
  Approved → Rejected   set rejection_reason, clear approved_date
  Rejected → Pending    clear rejection_reason
  Rejected → Approved   stamp approved_date, clear rejection_reason

Only Approved unlocks new transactions. Leaving Approved does not touch the
transactions already recorded; it only blocks new ones until the request is
approved again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from budgetpilot.exceptions import IllegalTransitionError, PermissionDeniedError, ValidationError
from budgetpilot.models.actors import Actor
from budgetpilot.models.ledger import ApprovalStatus, PurchaseRequest
from budgetpilot.models.mutations import utcnow

logger = logging.getLogger("budgetpilot.execution.approval")

# Single-step transition table: every ordered pair of distinct states
TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset({ApprovalStatus.PENDING, ApprovalStatus.REJECTED}),
    ApprovalStatus.REJECTED: frozenset({ApprovalStatus.PENDING, ApprovalStatus.APPROVED}),
}


class ApprovalDecision(BaseModel):
    """One confirmed status change, kept in an append-only log."""

    model_config = ConfigDict(frozen=True)

    purchase_request_id: int
    from_status: ApprovalStatus
    to_status: ApprovalStatus
    decided_by: int | None = None
    reason: str = ""
    transactions_at_decision: int = 0
    decided_at: datetime = Field(default_factory=utcnow)


class ApprovalStateMachine:
    """Validates and applies purchase request status transitions.

    Args:
        require_rejection_reason: Pending → Rejected needs a non-empty reason
            unless the caller explicitly opts out for that transition.
        block_regression_with_transactions: Refuse to move an Approved request
            that already has transactions back to Pending or Rejected. Off by
            default: existing transactions survive the regression.
        clock: Source of "now" for approved dates (injectable for tests).
    """

    def __init__(
        self,
        require_rejection_reason: bool = True,
        block_regression_with_transactions: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._require_rejection_reason = require_rejection_reason
        self._block_regression = block_regression_with_transactions
        self._clock = clock
        self._decisions: list[ApprovalDecision] = []

    @property
    def decisions(self) -> list[ApprovalDecision]:
        """Audit trail of every confirmed decision."""
        return list(self._decisions)

    @staticmethod
    def allowed_targets(status: ApprovalStatus) -> frozenset[ApprovalStatus]:
        return TRANSITIONS[status]

    @staticmethod
    def can_create_transaction(request: PurchaseRequest) -> bool:
        """Only approved requests accept new transactions."""
        return request.approval_status == ApprovalStatus.APPROVED

    def check_transaction_allowed(self, request: PurchaseRequest) -> None:
        """Raise if a transaction cannot be recorded against ``request`` right now."""
        if not self.can_create_transaction(request):
            raise ValidationError(
                f"Purchase request {request.id} is {request.approval_status.value}; "
                "transactions can only be added to approved requests",
                field="purchase_request_id",
            )

    def check_transition(
        self,
        request: PurchaseRequest,
        to_status: ApprovalStatus,
        *,
        rejection_reason: str | None = None,
        transaction_count: int = 0,
        actor: Actor | None = None,
        require_reason: bool | None = None,
    ) -> None:
        """Raise unless ``request`` may move to ``to_status``.

        Raises:
            PermissionDeniedError: The actor cannot decide purchase requests.
            IllegalTransitionError: Not in the transition table, or blocked regression.
            ValidationError: A required rejection reason is missing.
        """
        if actor is not None and not actor.can_approve_purchase_requests:
            raise PermissionDeniedError(
                f"{actor.name or f'User {actor.id}'} cannot approve or reject purchase requests",
                field="approval_status",
            )

        current = request.approval_status
        if to_status not in TRANSITIONS[current]:
            raise IllegalTransitionError(
                f"Purchase request {request.id} is already {current.value}",
                field="approval_status",
            )

        if (
            current == ApprovalStatus.APPROVED
            and transaction_count > 0
            and self._block_regression
        ):
            raise IllegalTransitionError(
                f"Purchase request {request.id} has {transaction_count} transaction(s) "
                f"and cannot leave Approved",
                field="approval_status",
            )

        needs_reason = self._require_rejection_reason if require_reason is None else require_reason
        if (
            current == ApprovalStatus.PENDING
            and to_status == ApprovalStatus.REJECTED
            and needs_reason
            and not (rejection_reason or "").strip()
        ):
            raise ValidationError("Please provide a reason for rejection", field="rejection_reason")

    def apply(
        self,
        request: PurchaseRequest,
        to_status: ApprovalStatus,
        *,
        actor_id: int | None = None,
        rejection_reason: str | None = None,
        now: datetime | None = None,
    ) -> PurchaseRequest:
        """Return a copy of ``request`` with the transition's effects applied.

        Does not validate; call :meth:`check_transition` first.
        """
        if to_status == ApprovalStatus.APPROVED:
            changes = {
                "approved_date": now or self._clock(),
                "rejection_reason": None,
                "approved_by": actor_id,
            }
        elif to_status == ApprovalStatus.REJECTED:
            reason = (rejection_reason or "").strip() or None
            changes = {
                "approved_date": None,
                "rejection_reason": reason,
                "approved_by": actor_id,
            }
        else:
            changes = {
                "approved_date": None,
                "rejection_reason": None,
                "approved_by": None,
            }
        return request.model_copy(update={"approval_status": to_status, **changes})

    def reset_for_edit(self, request: PurchaseRequest) -> PurchaseRequest:
        """Editing an approved request sends it back for a new decision."""
        if request.approval_status != ApprovalStatus.APPROVED:
            return request
        return self.apply(request, ApprovalStatus.PENDING)

    def record(
        self,
        before: PurchaseRequest,
        after: PurchaseRequest,
        transaction_count: int = 0,
    ) -> ApprovalDecision:
        """Append a confirmed decision to the audit trail."""
        decision = ApprovalDecision(
            purchase_request_id=after.id,
            from_status=before.approval_status,
            to_status=after.approval_status,
            decided_by=after.approved_by,
            reason=after.rejection_reason or "",
            transactions_at_decision=transaction_count,
        )
        self._decisions.append(decision)

        if before.approval_status == ApprovalStatus.APPROVED and transaction_count > 0:
            logger.warning(
                "Purchase request %s left Approved with %d existing transaction(s); they are kept",
                after.id,
                transaction_count,
            )
        logger.info(
            "Purchase request %s: %s -> %s",
            after.id,
            before.approval_status.value,
            after.approval_status.value,
        )
        return decision
