"""
BudgetPilot — budget ledger and purchase approval workflow.

Line items, purchase requests and transactions with exact integer-money
totals, an approval state machine, and optimistic writes that roll back
cleanly when the server says no.
"""

__version__ = "0.3.0"
__all__ = ["BudgetPilot", "BudgetPilotConfig"]

from budgetpilot.config import BudgetPilotConfig  # noqa: E402
from budgetpilot.pilot import BudgetPilot  # noqa: E402
