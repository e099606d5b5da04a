from decimal import Decimal
from pathlib import Path

import pytest

from conftest import build_env, drawer_balance

from xpos.domain.errors import (
    AuthorizationError,
    ClosingNotFoundError,
    ClosingNotPendingError,
    DrawerInactiveError,
    EmployeeNotFoundError,
    ValidationError,
)
from xpos.domain.models import ClosingStatus, Severity

D = Decimal


def test_balanced_closing_completes_without_touching_the_ledger(tmp_path: Path):
    env = build_env(tmp_path)
    c = env.container
    c.drawers.deposit(env.alice, env.drawer.id, env.usd, "250")
    c.drawers.deposit(env.alice, env.drawer.id, env.eur, "80")
    shift = c.shifts.start_shift(env.alice, drawer_id=env.drawer.id)

    closing = c.drawers.submit_closing(
        env.alice,
        env.drawer.id,
        [{"currency_id": env.eur, "amount": "80"}, {"currency_id": env.usd, "amount": "250.00"}],
        notes="end of day",
    )

    assert closing.status is ClosingStatus.COMPLETED
    assert closing.closed_by == env.alice
    assert closing.opening_time == shift.start_time
    assert closing.notes == "end of day"
    assert [(l.currency_id, l.expected, l.actual, l.variance) for l in closing.lines] == sorted(
        [(env.usd, D("250.00"), D("250.00"), D("0.00")), (env.eur, D("80.00"), D("80.00"), D("0.00"))]
    )

    assert drawer_balance(env, env.usd) == D("250.00")
    with env.repo.unit_of_work(readonly=True) as uow:
        assert uow.list_reconciliations(drawer_id=env.drawer.id) == []

    event = env.sink.events[-1]
    assert event.action == "DRAWER_CLOSING"
    assert event.severity is Severity.INFO
    assert event.new_values["closing"] == closing.uuid
    assert c.drawers.get_closing(closing.uuid) == closing


def test_closing_with_variance_waits_for_admin_review(tmp_path: Path):
    env = build_env(tmp_path)
    c = env.container
    c.drawers.deposit(env.alice, env.drawer.id, env.usd, "100")

    closing = c.drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "95"}])

    assert closing.status is ClosingStatus.PENDING
    assert closing.opening_time is None
    assert closing.lines[0].variance == D("-5.00")
    assert env.sink.events[-1].severity is Severity.WARNING
    assert drawer_balance(env, env.usd) == D("100.00")

    with pytest.raises(AuthorizationError):
        c.drawers.review_closing(env.alice, closing.uuid, "completed")

    reviewed = c.drawers.review_closing(env.admin, closing.uuid, "disputed", notes="  recount tomorrow ")

    assert reviewed.status is ClosingStatus.DISPUTED
    assert reviewed.reviewed_by == env.admin
    assert reviewed.review_notes == "recount tomorrow"
    assert env.sink.events[-1].action == "CLOSING_REVIEW"
    assert env.sink.events[-1].severity is Severity.WARNING

    with pytest.raises(ClosingNotPendingError):
        c.drawers.review_closing(env.admin, closing.uuid, ClosingStatus.COMPLETED)


def test_variance_inside_tolerance_still_completes(tmp_path: Path):
    env = build_env(tmp_path, tolerance="0.50")
    c = env.container
    c.drawers.deposit(env.alice, env.drawer.id, env.usd, "10")

    closing = c.drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "10.40"}])

    assert closing.status is ClosingStatus.COMPLETED
    assert closing.lines[0].variance == D("0.40")


def test_review_rejects_unknown_closing_and_bad_status(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    closing = drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "1"}])

    with pytest.raises(ValidationError):
        drawers.review_closing(env.admin, closing.uuid, "pending")
    with pytest.raises(ValidationError):
        drawers.review_closing(env.admin, closing.uuid, "approved")
    with pytest.raises(ClosingNotFoundError):
        drawers.review_closing(env.admin, "no-such-closing", "completed")
    with pytest.raises(ClosingNotFoundError):
        drawers.get_closing("no-such-closing")

    assert drawers.get_closing(closing.uuid).status is ClosingStatus.PENDING


def test_invalid_closing_writes_nothing(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    events_before = len(env.sink.events)

    with pytest.raises(ValidationError, match="at least one"):
        drawers.submit_closing(env.alice, env.drawer.id, [])
    with pytest.raises(ValidationError, match="more than once"):
        drawers.submit_closing(
            env.alice,
            env.drawer.id,
            [{"currency_id": env.usd, "amount": "1"}, {"currency_id": env.usd, "amount": "2"}],
        )
    drawers.update_drawer(env.admin, env.drawer.id, active=False)
    with pytest.raises(DrawerInactiveError):
        drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "1"}])

    assert drawers.list_closings().total == 0
    assert env.sink.actions()[events_before:] == ["UPDATE"]


def test_list_closings_filters_and_pages(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    other = drawers.create_drawer(env.admin, "Back office")
    first = drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "0"}])
    second = drawers.submit_closing(env.alice, env.drawer.id, [{"currency_id": env.usd, "amount": "3"}])
    drawers.submit_closing(env.bob, other.id, [{"currency_id": env.eur, "amount": "0"}])

    page = drawers.list_closings(drawer_id=env.drawer.id, limit=1)
    assert page.total == 2
    assert [c.uuid for c in page.items] == [second.uuid]
    assert [c.uuid for c in drawers.list_closings(drawer_id=env.drawer.id, page=2, limit=1).items] == [first.uuid]

    pending = drawers.list_closings(status="pending")
    assert [c.uuid for c in pending.items] == [second.uuid]
    assert pending.items[0].lines[0].actual == D("3.00")
    assert drawers.list_closings(status=ClosingStatus.COMPLETED).total == 2

    with pytest.raises(ValidationError):
        drawers.list_closings(status="settled")


def test_assign_drawer_and_status_view(tmp_path: Path):
    env = build_env(tmp_path)
    c = env.container
    c.drawers.deposit(env.alice, env.drawer.id, env.usd, "40")
    c.drawers.deposit(env.alice, env.drawer.id, env.eur, "15")

    assigned = c.drawers.assign_drawer(env.admin, env.drawer.id, env.alice)

    assert assigned.assigned_to == env.alice
    assert env.sink.events[-1].action == "DRAWER_ASSIGN"
    assert env.sink.events[-1].old_values == {"assigned_to": None}
    assert env.sink.events[-1].new_values == {"assigned_to": env.alice}

    env.repo.upsert_currency("EUR", "Euro", "€", active=False)
    status = c.drawers.get_drawer_status(env.drawer.id)
    assert status.assigned_to_name == "Alice Teller"
    assert [(b.currency_code, b.balance) for b in status.balances] == [("USD", D("40.00"))]

    cleared = c.drawers.assign_drawer(env.admin, env.drawer.id, None)
    assert cleared.assigned_to is None
    assert c.drawers.get_drawer_status(env.drawer.id).assigned_to_name is None


def test_assign_drawer_requires_admin_and_active_employee(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    gone = env.repo.add_user("erin", "Erin", active=False)

    with pytest.raises(AuthorizationError):
        drawers.assign_drawer(env.alice, env.drawer.id, env.alice)
    with pytest.raises(EmployeeNotFoundError):
        drawers.assign_drawer(env.admin, env.drawer.id, gone)
    with pytest.raises(EmployeeNotFoundError):
        drawers.assign_drawer(env.admin, env.drawer.id, 9999)

    assert drawers.get_drawer(env.drawer.id).drawer.assigned_to is None
