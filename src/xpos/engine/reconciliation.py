from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional

from xpos.domain.errors import ValidationError
from xpos.domain.models import (
    AuditEvent,
    Classification,
    ClosingStatus,
    CurrencyReconciliation,
    DrawerClosing,
    DrawerClosingLine,
    DrawerReconciliation,
    LedgerKind,
    ReconciliationStatus,
    Severity,
    Shift,
)
from xpos.domain.money import parse_amount
from xpos.engine.ledger import LedgerStore
from xpos.repositories.unit_of_work import UnitOfWork

log = logging.getLogger("xpos.ledger")

DEFAULT_TOLERANCE = Decimal("0.01")


class ReconciliationEngine:
    def __init__(self, ledger: LedgerStore | None = None, tolerance: Decimal | str = DEFAULT_TOLERANCE):
        self.ledger = ledger or LedgerStore()
        self.tolerance = parse_amount(tolerance, "Tolerance")
        if self.tolerance < 0:
            raise ValidationError("Tolerance must be >= 0.")

    def classify(self, expected: Decimal, actual: Decimal) -> Classification:
        difference = actual - expected
        if abs(difference) <= self.tolerance:
            status = ReconciliationStatus.BALANCED
        elif difference > 0:
            status = ReconciliationStatus.OVER
        else:
            status = ReconciliationStatus.SHORT
        return Classification(difference=difference, status=status)

    def reconcile_drawer(
        self,
        uow: UnitOfWork,
        drawer_id: int,
        currency_id: int,
        actual_balance: object,
        actor_id: int,
        notes: Optional[str] = None,
    ) -> DrawerReconciliation:
        """Record a counted drawer balance and true the drawer up to it.

        Any nonzero difference, even one inside the tolerance, is booked as an
        adjustment so the drawer afterwards holds exactly the counted amount.
        """
        actual = parse_amount(actual_balance, "Actual balance")
        if actual < 0:
            raise ValidationError("Actual balance must be >= 0.")
        self.ledger.require_drawer(uow, drawer_id)
        self.ledger.require_currency(uow, currency_id)

        expected = self.ledger.balance(uow, drawer_id, currency_id)
        result = self.classify(expected, actual)
        reconciliation = uow.insert_reconciliation(
            drawer_id=drawer_id,
            currency_id=currency_id,
            expected=expected,
            actual=actual,
            difference=result.difference,
            status=result.status,
            reconciled_by=actor_id,
            notes=notes,
        )

        adjustment = None
        if result.difference != 0:
            adjustment = self.ledger.apply(
                uow,
                drawer_id,
                currency_id,
                LedgerKind.ADJUSTMENT,
                result.difference,
                actor_id,
                reference=("reconciliation", reconciliation.uuid),
                notes=f"Reconciliation: {result.status.value}",
            )

        uow.emit(
            AuditEvent(
                actor_id=actor_id,
                action="CASH_RECONCILIATION",
                resource_type="cash_drawer",
                resource_id=str(drawer_id),
                severity=Severity.INFO if result.status is ReconciliationStatus.BALANCED else Severity.WARNING,
                old_values={"currency_id": currency_id, "expected": str(expected)},
                new_values={
                    "actual": str(actual),
                    "difference": str(result.difference),
                    "status": result.status.value,
                    "reconciliation": reconciliation.uuid,
                },
            )
        )
        return DrawerReconciliation(reconciliation=reconciliation, adjustment=adjustment)

    def record_shift_reconciliation(
        self,
        uow: UnitOfWork,
        shift: Shift,
        currency_id: int,
        expected: Decimal,
        actual: Decimal,
        actor_id: int,
    ) -> CurrencyReconciliation:
        result = self.classify(expected, actual)
        uow.upsert_shift_closing(shift.id, currency_id, actual, expected, result.difference)
        if shift.drawer_id is not None:
            uow.insert_reconciliation(
                drawer_id=shift.drawer_id,
                currency_id=currency_id,
                expected=expected,
                actual=actual,
                difference=result.difference,
                status=result.status,
                reconciled_by=actor_id,
                shift_id=shift.id,
                notes=f"Shift end reconciliation - Shift: {shift.uuid}",
            )
        if result.status is not ReconciliationStatus.BALANCED:
            log.warning(
                "shift_variance shift=%s currency=%s expected=%s actual=%s difference=%s",
                shift.uuid,
                currency_id,
                expected,
                actual,
                result.difference,
            )
        return CurrencyReconciliation(
            currency_id=currency_id,
            expected=expected,
            actual=actual,
            difference=result.difference,
            status=result.status,
        )

    def record_drawer_closing(
        self,
        uow: UnitOfWork,
        drawer_id: int,
        actual_balances: Iterable[dict],
        actor_id: int,
        notes: Optional[str] = None,
    ) -> DrawerClosing:
        """End-of-day count of a drawer, kept for review.

        Unlike :meth:`reconcile_drawer` nothing is booked on the ledger. A
        closing whose lines are all within tolerance is ``completed`` straight
        away; any other closing waits in ``pending`` for an admin review.
        """
        self.ledger.require_drawer(uow, drawer_id)
        counts = self.ledger.counted_balances(uow, actual_balances, require_active=False)
        if not counts:
            raise ValidationError("A drawer closing needs at least one counted balance.")

        lines: list[DrawerClosingLine] = []
        balanced = True
        for currency_id, actual in sorted(counts):
            expected = self.ledger.balance(uow, drawer_id, currency_id)
            result = self.classify(expected, actual)
            balanced = balanced and result.status is ReconciliationStatus.BALANCED
            lines.append(DrawerClosingLine(currency_id=currency_id, expected=expected, actual=actual, variance=result.difference))

        closing = uow.insert_drawer_closing(
            drawer_id=drawer_id,
            closed_by=actor_id,
            opening_time=uow.earliest_active_shift_start(drawer_id),
            status=ClosingStatus.COMPLETED if balanced else ClosingStatus.PENDING,
            notes=notes,
            lines=lines,
        )
        uow.emit(
            AuditEvent(
                actor_id=actor_id,
                action="DRAWER_CLOSING",
                resource_type="cash_drawer",
                resource_id=str(drawer_id),
                severity=Severity.INFO if balanced else Severity.WARNING,
                new_values={
                    "closing": closing.uuid,
                    "status": closing.status.value,
                    "variance": {str(line.currency_id): str(line.variance) for line in closing.lines},
                },
            )
        )
        return closing
