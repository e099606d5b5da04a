from decimal import Decimal
from pathlib import Path

import pytest

from conftest import build_env, drawer_balance

from xpos.domain.errors import ValidationError
from xpos.domain.models import LedgerKind, ReconciliationStatus, Severity
from xpos.engine.reconciliation import ReconciliationEngine

D = Decimal


@pytest.mark.parametrize(
    "expected, actual, status, difference",
    [
        ("100.00", "100.00", ReconciliationStatus.BALANCED, "0.00"),
        ("100.00", "100.01", ReconciliationStatus.BALANCED, "0.01"),
        ("100.00", "99.99", ReconciliationStatus.BALANCED, "-0.01"),
        ("100.00", "100.02", ReconciliationStatus.OVER, "0.02"),
        ("100.00", "99.98", ReconciliationStatus.SHORT, "-0.02"),
        ("0.00", "0.00", ReconciliationStatus.BALANCED, "0.00"),
        ("-12.00", "0.00", ReconciliationStatus.OVER, "12.00"),
    ],
)
def test_classify_uses_inclusive_tolerance(expected, actual, status, difference):
    result = ReconciliationEngine().classify(D(expected), D(actual))
    assert result.status is status
    assert result.difference == D(difference)


def test_classify_with_wider_tolerance():
    engine = ReconciliationEngine(tolerance="0.50")
    assert engine.classify(D("10.00"), D("10.50")).status is ReconciliationStatus.BALANCED
    assert engine.classify(D("10.00"), D("9.49")).status is ReconciliationStatus.SHORT


def test_negative_tolerance_is_rejected():
    with pytest.raises(ValidationError):
        ReconciliationEngine(tolerance="-0.01")


def test_reconcile_short_drawer_books_adjustment_to_counted_amount(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, "200")

    result = drawers.reconcile(env.alice, env.drawer.id, env.usd, "195.50", notes="evening count")
    rec = result.reconciliation

    assert rec.status is ReconciliationStatus.SHORT
    assert rec.expected_balance == D("200.00")
    assert rec.actual_balance == D("195.50")
    assert rec.difference == D("-4.50")
    assert rec.shift_id is None
    assert result.adjustment is not None
    assert result.adjustment.kind is LedgerKind.ADJUSTMENT
    assert result.adjustment.amount == D("-4.50")
    assert result.adjustment.reference_type == "reconciliation"
    assert result.adjustment.reference_id == rec.uuid
    assert result.adjustment.notes == "Reconciliation: short"
    assert drawer_balance(env, env.usd) == D("195.50")

    event = env.sink.events[-1]
    assert event.action == "CASH_RECONCILIATION"
    assert event.severity is Severity.WARNING

    with env.repo.unit_of_work(readonly=True) as uow:
        assert env.container.ledger.verify(uow) == []
        assert len(uow.list_reconciliations(drawer_id=env.drawer.id)) == 1


def test_reconcile_exact_count_writes_no_adjustment(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.usd, "75")

    result = drawers.reconcile(env.alice, env.drawer.id, env.usd, "75.00")

    assert result.reconciliation.status is ReconciliationStatus.BALANCED
    assert result.adjustment is None
    assert env.sink.events[-1].severity is Severity.INFO
    assert len(drawers.get_drawer(env.drawer.id).recent_entries) == 1


def test_reconcile_within_tolerance_is_balanced_but_still_trued_up(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.alice, env.drawer.id, env.eur, "50")

    result = drawers.reconcile(env.alice, env.drawer.id, env.eur, "50.01")

    assert result.reconciliation.status is ReconciliationStatus.BALANCED
    assert result.adjustment is not None
    assert result.adjustment.amount == D("0.01")
    assert drawer_balance(env, env.eur) == D("50.01")


def test_reconcile_currency_never_used_expects_zero(tmp_path: Path):
    env = build_env(tmp_path)

    result = env.container.drawers.reconcile(env.alice, env.drawer.id, env.eur, "12")

    assert result.reconciliation.expected_balance == D("0.00")
    assert result.reconciliation.status is ReconciliationStatus.OVER
    assert drawer_balance(env, env.eur) == D("12.00")


def test_reconcile_rejects_negative_count(tmp_path: Path):
    env = build_env(tmp_path)
    with pytest.raises(ValidationError):
        env.container.drawers.reconcile(env.alice, env.drawer.id, env.usd, "-1")
