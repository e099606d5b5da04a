from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"


class LedgerKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


class ShiftStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class ReconciliationStatus(str, Enum):
    BALANCED = "balanced"
    OVER = "over"
    SHORT = "short"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ClosingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    full_name: str
    role: str
    active: int = 1


@dataclass(frozen=True)
class Currency:
    id: int
    code: str
    name: str
    symbol: str
    active: int = 1


@dataclass(frozen=True)
class CashDrawer:
    id: int
    uuid: str
    name: str
    location: Optional[str]
    active: int
    low_balance_alert: Decimal
    created_by: Optional[int]
    created_at: str
    assigned_to: Optional[int] = None


@dataclass(frozen=True)
class DrawerBalance:
    drawer_id: int
    currency_id: int
    currency_code: str
    balance: Decimal
    last_updated: str
    last_updated_by: Optional[int]


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    uuid: str
    drawer_id: int
    currency_id: int
    kind: LedgerKind
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: Optional[str]
    reference_id: Optional[str]
    notes: Optional[str]
    performed_by: int
    created_at: str

    @property
    def signed_amount(self) -> Decimal:
        # adjustments already carry their sign
        if self.kind is LedgerKind.WITHDRAWAL:
            return -self.amount
        return self.amount


@dataclass(frozen=True)
class LedgerDiscrepancy:
    drawer_id: int
    currency_id: int
    entry_id: Optional[int]
    problem: str


@dataclass(frozen=True)
class Shift:
    id: int
    uuid: str
    employee_id: int
    drawer_id: Optional[int]
    status: ShiftStatus
    start_time: str
    end_time: Optional[str]
    opening_notes: Optional[str]
    closing_notes: Optional[str]
    handover_to: Optional[int]
    handover_notes: Optional[str]


@dataclass(frozen=True)
class ShiftBalance:
    shift_id: int
    currency_id: int
    opening_balance: Decimal
    closing_balance: Optional[Decimal]
    expected_closing: Optional[Decimal]
    difference: Optional[Decimal]


@dataclass(frozen=True)
class ShiftSummary:
    shift_id: int
    total_transactions: int
    total_profit: Decimal
    total_commission: Decimal
    cancelled_transactions: int
    total_volume_in: Decimal
    total_volume_out: Decimal


@dataclass(frozen=True)
class ExchangeTransaction:
    id: int
    uuid: str
    shift_id: int
    currency_in_id: int
    currency_out_id: int
    amount_in: Decimal
    amount_out: Decimal
    profit: Decimal
    commission: Decimal
    status: TransactionStatus
    deleted_at: Optional[str]
    created_at: str


@dataclass(frozen=True)
class Reconciliation:
    id: int
    uuid: str
    drawer_id: int
    currency_id: int
    shift_id: Optional[int]
    expected_balance: Decimal
    actual_balance: Decimal
    difference: Decimal
    status: ReconciliationStatus
    notes: Optional[str]
    reconciled_by: int
    created_at: str


@dataclass(frozen=True)
class Classification:
    difference: Decimal
    status: ReconciliationStatus


@dataclass(frozen=True)
class CurrencyReconciliation:
    currency_id: int
    expected: Decimal
    actual: Decimal
    difference: Decimal
    status: ReconciliationStatus


@dataclass(frozen=True)
class DrawerReconciliation:
    reconciliation: Reconciliation
    adjustment: Optional[LedgerEntry]


@dataclass(frozen=True)
class EndShiftResult:
    shift: Shift
    summary: ShiftSummary
    reconciliations: tuple[CurrencyReconciliation, ...]
    has_variance: bool


@dataclass(frozen=True)
class HandoverResult:
    source: Shift
    target: Shift


@dataclass(frozen=True)
class ActiveShift:
    shift: Shift
    balances: tuple[ShiftBalance, ...]
    transaction_count: int
    total_profit: Decimal


@dataclass(frozen=True)
class ShiftDetails:
    shift: Shift
    balances: tuple[ShiftBalance, ...]
    summary: Optional[ShiftSummary]
    transactions: tuple[ExchangeTransaction, ...]


@dataclass(frozen=True)
class DrawerDetails:
    drawer: CashDrawer
    balances: tuple[DrawerBalance, ...]
    recent_entries: tuple[LedgerEntry, ...]


@dataclass(frozen=True)
class LowBalanceAlert:
    drawer_id: int
    drawer_name: str
    location: Optional[str]
    currency_id: int
    currency_code: str
    balance: Decimal
    threshold: Decimal


@dataclass(frozen=True)
class AuditEvent:
    actor_id: int
    action: str
    resource_type: str
    resource_id: str
    severity: Severity = Severity.INFO
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class Page:
    items: tuple[Any, ...]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass(frozen=True)
class HealthReport:
    sqlite_integrity: str
    db_size_bytes: int
    logs_count: int
    ledger_entries: int
    ledger_discrepancies: int
    generated_at: str
    problems: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DrawerStatus:
    drawer: CashDrawer
    assigned_to_name: Optional[str]
    balances: tuple[DrawerBalance, ...]


@dataclass(frozen=True)
class DrawerClosingLine:
    currency_id: int
    expected: Decimal
    actual: Decimal
    variance: Decimal


@dataclass(frozen=True)
class DrawerClosing:
    id: int
    uuid: str
    drawer_id: int
    closed_by: int
    opening_time: Optional[str]
    closing_time: str
    status: ClosingStatus
    notes: Optional[str]
    reviewed_by: Optional[int]
    review_notes: Optional[str]
    lines: tuple[DrawerClosingLine, ...] = ()
