from .ledger import LedgerStore
from .projector import BalanceProjector
from .reconciliation import ReconciliationEngine
from .shifts import ShiftManager

__all__ = [
    "LedgerStore",
    "BalanceProjector",
    "ReconciliationEngine",
    "ShiftManager",
]
