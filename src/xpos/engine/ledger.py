from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

from xpos.domain.errors import (
    CurrencyInactiveError,
    CurrencyNotFoundError,
    DrawerInactiveError,
    DrawerNotFoundError,
    InsufficientBalanceError,
    ValidationError,
)
from xpos.domain.models import CashDrawer, Currency, LedgerDiscrepancy, LedgerEntry, LedgerKind
from xpos.domain.money import ZERO, parse_amount
from xpos.repositories.unit_of_work import UnitOfWork

log = logging.getLogger("xpos.ledger")


def coerce_kind(kind: LedgerKind | str) -> LedgerKind:
    try:
        return LedgerKind(kind)
    except ValueError as e:
        raise ValidationError(f"Unknown ledger entry kind '{kind}'.") from e


class LedgerStore:
    """Append-only record of drawer cash movements.

    ``drawer_balances`` is a projection of ``ledger_entries``: every balance
    change goes through :meth:`apply`, which writes the new balance and the
    entry in the caller's transaction. :meth:`rebuild_balances` regenerates the
    projection from the entries alone.
    """

    def require_drawer(self, uow: UnitOfWork, drawer_id: int, active: bool = True) -> CashDrawer:
        drawer = uow.get_drawer(drawer_id)
        if drawer is None:
            raise DrawerNotFoundError(f"Cash drawer {drawer_id} not found.")
        if active and not drawer.active:
            raise DrawerInactiveError(f"Cash drawer '{drawer.name}' is inactive.")
        return drawer

    def require_currency(self, uow: UnitOfWork, currency_id: int, active: bool = True) -> Currency:
        currency = uow.get_currency(currency_id)
        if currency is None:
            raise CurrencyNotFoundError(f"Currency {currency_id} not found.")
        if active and not currency.active:
            raise CurrencyInactiveError(f"Currency {currency.code} is inactive.")
        return currency

    def counted_balances(self, uow: UnitOfWork, items: Iterable[dict], require_active: bool = True) -> list[tuple[int, Decimal]]:
        """items: [{currency_id, amount}]"""
        counts: list[tuple[int, Decimal]] = []
        seen: set[int] = set()
        for it in items:
            try:
                currency_id = int(it["currency_id"])
                raw_amount = it["amount"]
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError("Each balance needs a currency_id and an amount.") from e
            amount = parse_amount(raw_amount)
            if amount < 0:
                raise ValidationError("Balance amounts must be >= 0.")
            if currency_id in seen:
                raise ValidationError(f"Currency {currency_id} listed more than once.")
            seen.add(currency_id)
            self.require_currency(uow, currency_id, active=require_active)
            counts.append((currency_id, amount))
        return counts

    def balance(self, uow: UnitOfWork, drawer_id: int, currency_id: int) -> Decimal:
        current = uow.get_balance(drawer_id, currency_id)
        return ZERO if current is None else current

    def apply(
        self,
        uow: UnitOfWork,
        drawer_id: int,
        currency_id: int,
        kind: LedgerKind | str,
        amount: object,
        actor_id: int,
        reference: Optional[tuple[str, str]] = None,
        notes: Optional[str] = None,
    ) -> LedgerEntry:
        """Mutate one drawer balance and append the matching entry.

        Deposits and withdrawals take a positive amount; adjustments take the
        signed delta. The caller owns the transaction and the audit event.
        """
        kind = coerce_kind(kind)
        value = parse_amount(amount)
        if kind is not LedgerKind.ADJUSTMENT and value <= 0:
            raise ValidationError("Amount must be > 0.")

        self.require_drawer(uow, drawer_id)
        self.require_currency(uow, currency_id)

        before = self.balance(uow, drawer_id, currency_id)
        delta = -value if kind is LedgerKind.WITHDRAWAL else value
        after = before + delta
        if after < 0:
            raise InsufficientBalanceError(f"Insufficient balance. Available: {before}")

        reference_type, reference_id = reference if reference else (None, None)
        uow.write_balance(drawer_id, currency_id, after, actor_id)
        entry = uow.insert_ledger_entry(
            drawer_id=drawer_id,
            currency_id=currency_id,
            kind=kind,
            amount=value,
            balance_before=before,
            balance_after=after,
            performed_by=actor_id,
            reference_type=reference_type,
            reference_id=None if reference_id is None else str(reference_id),
            notes=notes,
        )
        log.info(
            "ledger_entry_applied entry=%s drawer=%s currency=%s kind=%s amount=%s before=%s after=%s actor=%s",
            entry.uuid,
            drawer_id,
            currency_id,
            kind.value,
            value,
            before,
            after,
            actor_id,
        )
        return entry

    def set_balance(
        self,
        uow: UnitOfWork,
        drawer_id: int,
        currency_id: int,
        new_balance: object,
        actor_id: int,
        notes: Optional[str] = None,
        reference: Optional[tuple[str, str]] = None,
    ) -> LedgerEntry:
        target = parse_amount(new_balance, "New balance")
        if target < 0:
            raise ValidationError("New balance must be >= 0.")
        current = self.balance(uow, drawer_id, currency_id)
        return self.apply(
            uow,
            drawer_id,
            currency_id,
            LedgerKind.ADJUSTMENT,
            target - current,
            actor_id,
            reference=reference,
            notes=notes,
        )

    def replay(self, uow: UnitOfWork, drawer_id: int, currency_id: int) -> Decimal:
        total = ZERO
        for entry in uow.list_ledger_entries(drawer_id):
            if entry.currency_id == currency_id:
                total += entry.signed_amount
        return total

    def _fold(self, entries: list[LedgerEntry]) -> dict[tuple[int, int], Decimal]:
        totals: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
        for entry in entries:
            totals[(entry.drawer_id, entry.currency_id)] += entry.signed_amount
        return dict(totals)

    def verify(self, uow: UnitOfWork, drawer_id: Optional[int] = None) -> list[LedgerDiscrepancy]:
        problems: list[LedgerDiscrepancy] = []
        running: dict[tuple[int, int], Decimal] = {}

        for entry in uow.list_ledger_entries(drawer_id):
            key = (entry.drawer_id, entry.currency_id)
            expected_before = running.get(key, ZERO)
            if entry.balance_before != expected_before:
                problems.append(
                    LedgerDiscrepancy(entry.drawer_id, entry.currency_id, entry.id, f"chain break: before={entry.balance_before} expected={expected_before}")
                )
            if entry.balance_after != entry.balance_before + entry.signed_amount:
                problems.append(
                    LedgerDiscrepancy(entry.drawer_id, entry.currency_id, entry.id, f"arithmetic: {entry.balance_before} + {entry.signed_amount} != {entry.balance_after}")
                )
            running[key] = expected_before + entry.signed_amount

        materialized = {(b.drawer_id, b.currency_id): b.balance for b in uow.list_drawer_balances(drawer_id)}
        for key in sorted(set(running) | set(materialized)):
            folded = running.get(key, ZERO)
            stored = materialized.get(key, ZERO)
            if folded != stored:
                problems.append(LedgerDiscrepancy(key[0], key[1], None, f"balance mismatch: stored={stored} ledger={folded}"))

        if problems:
            log.warning("ledger_verify_failed drawer=%s problems=%s", drawer_id, len(problems))
        return problems

    def rebuild_balances(self, uow: UnitOfWork, drawer_id: Optional[int] = None) -> int:
        folded = self._fold(uow.list_ledger_entries(drawer_id))
        for balance in uow.list_drawer_balances(drawer_id):
            folded.setdefault((balance.drawer_id, balance.currency_id), ZERO)

        for (d_id, c_id), value in sorted(folded.items()):
            if value < 0:
                raise InsufficientBalanceError(f"Ledger folds to a negative balance for drawer {d_id} currency {c_id}.")
            uow.write_balance(d_id, c_id, value, None)
        return len(folded)
