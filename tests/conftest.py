"""Shared fixtures for the BudgetPilot test suite."""

from __future__ import annotations

import pytest

from budgetpilot.execution.approval import ApprovalStateMachine
from budgetpilot.execution.coordinator import MutationCoordinator
from budgetpilot.ledger.store import LedgerStore
from budgetpilot.models.actors import Actor, PermissionLevel
from budgetpilot.models.ledger import CategoryType
from budgetpilot.persistence.memory import InMemoryPersistence
from tests.factories import EXPENSE_ID, NOW, REVENUE_ID, make_line_item


@pytest.fixture
def admin() -> Actor:
    return Actor(id=1, name="Pat Admin", level=PermissionLevel.ADMIN)


@pytest.fixture
def editor() -> Actor:
    return Actor(id=2, name="Sam Editor", level=PermissionLevel.EDIT)


@pytest.fixture
def viewer() -> Actor:
    return Actor(id=3, name="Vic Viewer", level=PermissionLevel.VIEW)


@pytest.fixture
def persistence() -> InMemoryPersistence:
    """Server with one expense line item (1000.00) and one revenue line item (500.00)."""
    backend = InMemoryPersistence()
    backend.seed([
        make_line_item(EXPENSE_ID, 100000, name="Sound equipment"),
        make_line_item(REVENUE_ID, 50000, CategoryType.REVENUE, name="Concert tickets"),
    ])
    return backend


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def approvals() -> ApprovalStateMachine:
    return ApprovalStateMachine(clock=lambda: NOW)


@pytest.fixture
def coordinator(store, persistence, approvals) -> MutationCoordinator:
    return MutationCoordinator(store, persistence, approvals=approvals, write_timeout=1.0, read_timeout=1.0)
