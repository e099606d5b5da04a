import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


@dataclass
class Env:
    container: object
    sink: RecordingAuditSink
    admin: int
    alice: int
    bob: int
    usd: int
    eur: int
    drawer: object

    @property
    def repo(self):
        return self.container.repo


def build_env(tmp_path: Path, tolerance: str = "0.01") -> Env:
    from xpos.application.container import build_container
    from xpos.config import Settings

    sink = RecordingAuditSink()
    container = build_container(
        tmp_path / "xpos.db",
        settings=Settings(variance_tolerance=Decimal(tolerance)),
        audit_sink=sink,
    )
    repo = container.repo
    admin = repo.add_user("admin", "Ada Admin", role="admin")
    alice = repo.add_user("alice", "Alice Teller")
    bob = repo.add_user("bob", "Bob Teller")
    usd = repo.add_currency("USD", "US Dollar", "$")
    eur = repo.add_currency("EUR", "Euro", "€")
    drawer = container.drawers.create_drawer(admin, "Front counter", "Lobby")
    return Env(
        container=container,
        sink=sink,
        admin=admin,
        alice=alice,
        bob=bob,
        usd=usd,
        eur=eur,
        drawer=drawer,
    )


def drawer_balance(env: Env, currency_id: int) -> Decimal:
    details = env.container.drawers.get_drawer(env.drawer.id)
    for balance in details.balances:
        if balance.currency_id == currency_id:
            return balance.balance
    return Decimal("0.00")
