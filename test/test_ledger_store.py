from decimal import Decimal
from pathlib import Path

import pytest

from conftest import build_env, drawer_balance

from xpos.domain.errors import (
    AuthorizationError,
    CurrencyInactiveError,
    DrawerInactiveError,
    DrawerNotFoundError,
    InsufficientBalanceError,
    ValidationError,
)
from xpos.domain.models import LedgerKind, Severity
from xpos.domain.money import from_minor, parse_amount, to_minor


def test_deposit_and_withdraw_keep_before_after_chain(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers

    first = drawers.deposit(env.alice, env.drawer.id, env.usd, "500.00", notes="float")
    second = drawers.withdraw(env.alice, env.drawer.id, env.usd, "120.50")

    assert first.kind is LedgerKind.DEPOSIT
    assert first.balance_before == Decimal("0.00")
    assert first.balance_after == Decimal("500.00")
    assert second.balance_before == first.balance_after
    assert second.balance_after == Decimal("379.50")
    assert second.signed_amount == Decimal("-120.50")
    assert drawer_balance(env, env.usd) == Decimal("379.50")

    assert env.sink.actions()[-2:] == ["CASH_DEPOSIT", "CASH_WITHDRAWAL"]
    assert env.sink.events[-2].severity is Severity.INFO
    assert env.sink.events[-1].severity is Severity.WARNING
    assert env.sink.events[-1].old_values["balance"] == "500.00"
    assert env.sink.events[-1].new_values["balance"] == "379.50"


def test_withdraw_more_than_balance_is_rejected_and_nothing_is_written(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, 100)
    events_before = len(env.sink.events)

    with pytest.raises(InsufficientBalanceError, match="Available: 100.00"):
        drawers.withdraw(env.alice, env.drawer.id, env.usd, "100.01")

    assert drawer_balance(env, env.usd) == Decimal("100.00")
    assert len(drawers.get_drawer(env.drawer.id).recent_entries) == 1
    assert len(env.sink.events) == events_before


@pytest.mark.parametrize("amount", [0, "-5", "abc", None, True, "NaN"])
def test_deposit_rejects_bad_amounts(tmp_path: Path, amount):
    env = build_env(tmp_path)
    with pytest.raises(ValidationError):
        env.container.drawers.deposit(env.alice, env.drawer.id, env.usd, amount)


def test_inactive_or_missing_drawer_and_currency_are_rejected(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    closed_currency = env.repo.add_currency("ARS", "Peso", "$", active=False)

    with pytest.raises(CurrencyInactiveError):
        drawers.deposit(env.alice, env.drawer.id, closed_currency, 10)
    with pytest.raises(DrawerNotFoundError):
        drawers.deposit(env.alice, 9999, env.usd, 10)

    drawers.update_drawer(env.admin, env.drawer.id, active=False)
    with pytest.raises(DrawerInactiveError):
        drawers.deposit(env.alice, env.drawer.id, env.usd, 10)


def test_adjust_sets_target_balance_and_records_signed_delta(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, 100)

    entry = drawers.adjust(env.admin, env.drawer.id, env.usd, "80", reason="miscount at open")

    assert entry.kind is LedgerKind.ADJUSTMENT
    assert entry.amount == Decimal("-20.00")
    assert entry.balance_after == Decimal("80.00")
    assert entry.notes == "miscount at open"
    assert drawer_balance(env, env.usd) == Decimal("80.00")
    assert env.sink.events[-1].action == "CASH_ADJUSTMENT"
    assert env.sink.events[-1].severity is Severity.CRITICAL


def test_adjust_requires_admin_and_reason(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers

    with pytest.raises(ValidationError, match="reason is required"):
        drawers.adjust(env.admin, env.drawer.id, env.usd, 50, reason="  ")
    with pytest.raises(AuthorizationError):
        drawers.adjust(env.alice, env.drawer.id, env.usd, 50, reason="fix")
    with pytest.raises(ValidationError):
        drawers.adjust(env.admin, env.drawer.id, env.usd, -1, reason="fix")


def test_inactive_actor_cannot_move_cash(tmp_path: Path):
    env = build_env(tmp_path)
    env.repo.set_user_active(env.alice, False)

    with pytest.raises(AuthorizationError):
        env.container.drawers.deposit(env.alice, env.drawer.id, env.usd, 10)


def test_replay_matches_materialized_balance(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, "250.25")
    drawers.withdraw(env.alice, env.drawer.id, env.usd, "50.05")
    drawers.adjust(env.admin, env.drawer.id, env.usd, "199.00", reason="recount")
    drawers.deposit(env.alice, env.drawer.id, env.eur, "10")

    ledger = env.container.ledger
    with env.repo.unit_of_work(readonly=True) as uow:
        assert ledger.replay(uow, env.drawer.id, env.usd) == Decimal("199.00")
        assert ledger.replay(uow, env.drawer.id, env.eur) == Decimal("10.00")
        assert ledger.verify(uow) == []


def test_audit_sink_failure_does_not_undo_committed_movement(tmp_path: Path):
    env = build_env(tmp_path)

    def explode(event):
        raise RuntimeError("sink offline")

    env.repo.audit_sink.record = explode
    entry = env.container.drawers.deposit(env.alice, env.drawer.id, env.usd, 40)

    assert entry.balance_after == Decimal("40.00")
    assert drawer_balance(env, env.usd) == Decimal("40.00")


def test_history_filters_and_paginates(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    for _ in range(3):
        drawers.deposit(env.alice, env.drawer.id, env.usd, 10)
    drawers.withdraw(env.alice, env.drawer.id, env.usd, 5)
    drawers.deposit(env.alice, env.drawer.id, env.eur, 7)

    page = drawers.history(env.drawer.id, currency_id=env.usd, page=1, limit=2)
    assert page.total == 4
    assert page.pages == 2
    assert len(page.items) == 2
    assert page.items[0].kind is LedgerKind.WITHDRAWAL

    deposits = drawers.history(env.drawer.id, kind="deposit", limit=100)
    assert deposits.total == 4

    with pytest.raises(ValidationError):
        drawers.history(env.drawer.id, limit=0)
    with pytest.raises(ValidationError):
        drawers.history(env.drawer.id, limit=101)
    with pytest.raises(ValidationError):
        drawers.history(env.drawer.id, kind="transfer")
    with pytest.raises(ValidationError):
        drawers.history(env.drawer.id, start_date="16/10/2026")


def test_low_balance_alerts_list_active_drawers_under_threshold(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, "1500")
    drawers.deposit(env.alice, env.drawer.id, env.eur, "300")
    other = drawers.create_drawer(env.admin, "Back office", low_balance_alert="50")
    drawers.deposit(env.alice, other.id, env.usd, "20")

    alerts = drawers.low_balance_alerts()

    assert [(a.drawer_id, a.currency_code, a.balance) for a in alerts] == [
        (other.id, "USD", Decimal("20.00")),
        (env.drawer.id, "EUR", Decimal("300.00")),
    ]
    assert alerts[1].threshold == Decimal("1000.00")


def test_drawer_management_is_admin_only_and_audited(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers

    with pytest.raises(AuthorizationError):
        drawers.create_drawer(env.alice, "Rogue drawer")
    with pytest.raises(ValidationError):
        drawers.create_drawer(env.admin, "   ")

    updated = drawers.update_drawer(env.admin, env.drawer.id, name="Counter 1", low_balance_alert="250")
    assert updated.name == "Counter 1"
    assert updated.low_balance_alert == Decimal("250.00")
    assert env.sink.events[-1].action == "UPDATE"
    assert env.sink.events[-1].old_values["name"] == "Front counter"
    assert [d.name for d in drawers.list_drawers(active=True)] == ["Counter 1"]


def test_money_helpers_quantize_to_cents():
    assert parse_amount(0.1) == Decimal("0.10")
    assert parse_amount("1.50") == Decimal("1.50")
    assert parse_amount("1.000") == Decimal("1.00")
    assert parse_amount(Decimal("2")) == Decimal("2.00")
    assert to_minor("12.34") == 1234
    assert to_minor(Decimal("1.005")) == 101
    assert from_minor(-505) == Decimal("-5.05")
    with pytest.raises(ValidationError):
        parse_amount("Infinity")


def test_amount_finer_than_a_cent_is_rejected(tmp_path: Path):
    with pytest.raises(ValidationError, match="two decimal places"):
        parse_amount("100.005")

    env = build_env(tmp_path)
    with pytest.raises(ValidationError):
        env.container.drawers.deposit(env.alice, env.drawer.id, env.usd, "10.001")
    with pytest.raises(ValidationError):
        env.container.shifts.start_shift(env.alice, opening_balances=[{"currency_id": env.usd, "amount": "0.999"}])

    assert drawer_balance(env, env.usd) == Decimal("0.00")
    assert env.container.shifts.get_active_shift(env.alice) is None
