"""Persistence backends for the remote ledger store."""

from budgetpilot.persistence.base import BasePersistence
from budgetpilot.persistence.http import HttpPersistence
from budgetpilot.persistence.memory import InMemoryPersistence
from budgetpilot.persistence.registry import create_persistence

__all__ = [
    "BasePersistence",
    "HttpPersistence",
    "InMemoryPersistence",
    "create_persistence",
]
