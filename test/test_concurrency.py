import threading
from decimal import Decimal
from pathlib import Path

from conftest import build_env, drawer_balance

from xpos.domain.errors import InsufficientBalanceError, ShiftAlreadyActiveError


def _run_in_threads(count: int, target) -> list:
    barrier = threading.Barrier(count)
    outcomes: list = []
    lock = threading.Lock()

    def worker(i: int):
        barrier.wait()
        try:
            result = target(i)
        except Exception as exc:  # collected for assertions
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_concurrent_start_shift_allows_exactly_one_active(tmp_path: Path):
    env = build_env(tmp_path)
    shifts = env.container.shifts

    outcomes = _run_in_threads(
        8,
        lambda i: shifts.start_shift(env.alice, opening_balances=[{"currency_id": env.usd, "amount": str(100 + i)}]),
    )

    conflicts = [o for o in outcomes if isinstance(o, ShiftAlreadyActiveError)]
    started = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(outcomes) == 8
    assert len(started) == 1
    assert len(conflicts) == 7
    assert shifts.list_shifts(employee_id=env.alice).total == 1
    assert all(c.active_shift_uuid == started[0].uuid for c in conflicts)


def test_concurrent_deposits_are_all_recorded(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers

    def deposit_five(_i):
        for _ in range(5):
            drawers.deposit(env.alice, env.drawer.id, env.usd, "1.00")
        return True

    outcomes = _run_in_threads(10, deposit_five)

    assert outcomes == [True] * 10
    assert drawer_balance(env, env.usd) == Decimal("50.00")
    assert drawers.history(env.drawer.id, limit=100).total == 50
    with env.repo.unit_of_work(readonly=True) as uow:
        assert env.container.ledger.verify(uow) == []


def test_concurrent_withdrawals_never_overdraw(tmp_path: Path):
    env = build_env(tmp_path)
    drawers = env.container.drawers
    drawers.deposit(env.admin, env.drawer.id, env.usd, "5.00")

    outcomes = _run_in_threads(10, lambda i: drawers.withdraw(env.alice, env.drawer.id, env.usd, "1.00"))

    rejected = [o for o in outcomes if isinstance(o, InsufficientBalanceError)]
    assert len(rejected) == 5
    assert len([o for o in outcomes if not isinstance(o, Exception)]) == 5
    assert drawer_balance(env, env.usd) == Decimal("0.00")
