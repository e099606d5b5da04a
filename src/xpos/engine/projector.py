from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from xpos.domain.models import LedgerKind, Shift
from xpos.domain.money import ZERO
from xpos.repositories.unit_of_work import UnitOfWork


class BalanceProjector:
    """Expected per-currency balances for a shift.

    expected = opening
             + completed exchange inflows - completed exchange outflows
             + drawer deposits - drawer withdrawals + drawer adjustments

    Drawer movements count only when the shift has a drawer, and only those
    recorded from ``start_time`` on. There is no upper bound, so movements
    booked after the shift ended still show up in a later preview.
    Pure read: running it twice over the same rows gives the same result.
    """

    def expected_balances(self, uow: UnitOfWork, shift: Shift) -> dict[int, Decimal]:
        expected: dict[int, Decimal] = defaultdict(lambda: ZERO)

        for balance in uow.list_shift_balances(shift.id):
            expected[balance.currency_id] += balance.opening_balance

        for currency_in, currency_out, amount_in, amount_out in uow.transaction_flows(shift.id):
            expected[currency_in] += amount_in
            expected[currency_out] -= amount_out

        if shift.drawer_id is not None:
            for currency_id, kind, total in uow.ledger_totals(shift.drawer_id, shift.start_time):
                if kind is LedgerKind.WITHDRAWAL:
                    expected[currency_id] -= total
                else:
                    expected[currency_id] += total

        return {currency_id: expected[currency_id] for currency_id in sorted(expected)}

    def expected_for(self, uow: UnitOfWork, shift: Shift, currency_id: int) -> Decimal:
        return self.expected_balances(uow, shift).get(currency_id, ZERO)
