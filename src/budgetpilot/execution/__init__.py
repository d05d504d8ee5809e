"""Approval workflow, optimistic mutations and poll reconciliation."""

from budgetpilot.execution.approval import ApprovalDecision, ApprovalStateMachine
from budgetpilot.execution.coordinator import MutationCoordinator
from budgetpilot.execution.handlers import MutationHandler, MutationPlan, TemporaryIds
from budgetpilot.execution.polling import PollOutcome, PollReconciler, PollResult

__all__ = [
    "ApprovalDecision",
    "ApprovalStateMachine",
    "MutationCoordinator",
    "MutationHandler",
    "MutationPlan",
    "PollOutcome",
    "PollReconciler",
    "PollResult",
    "TemporaryIds",
]
