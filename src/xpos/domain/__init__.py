from .models import (
    CashDrawer,
    Currency,
    LedgerEntry,
    LedgerKind,
    Reconciliation,
    ReconciliationStatus,
    Shift,
    ShiftStatus,
    User,
)
from .errors import (
    AppError,
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "CashDrawer",
    "Currency",
    "LedgerEntry",
    "LedgerKind",
    "Reconciliation",
    "ReconciliationStatus",
    "Shift",
    "ShiftStatus",
    "User",
    "AppError",
    "AuthorizationError",
    "ConflictError",
    "InvalidStateError",
    "NotFoundError",
    "ValidationError",
]
