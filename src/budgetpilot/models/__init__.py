"""Data models for the budget ledger."""

from budgetpilot.models.actors import Actor, PermissionLevel
from budgetpilot.models.ledger import (
    ApprovalStatus,
    CategoryType,
    EntityKind,
    LedgerAggregate,
    LineItem,
    PurchaseRequest,
    Transaction,
    entity_key,
)
from budgetpilot.models.mutations import Mutation, MutationAction, MutationResult, MutationStatus

__all__ = [
    "Actor",
    "ApprovalStatus",
    "CategoryType",
    "EntityKind",
    "LedgerAggregate",
    "LineItem",
    "Mutation",
    "MutationAction",
    "MutationResult",
    "MutationStatus",
    "PermissionLevel",
    "PurchaseRequest",
    "Transaction",
    "entity_key",
]
