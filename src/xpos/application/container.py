from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from xpos.config import Settings
from xpos.engine.ledger import LedgerStore
from xpos.engine.projector import BalanceProjector
from xpos.engine.reconciliation import ReconciliationEngine
from xpos.engine.shifts import ShiftManager
from xpos.repositories.sqlite_repo import SqliteRepository
from xpos.services.audit import AuditSink, LoggingAuditSink
from xpos.services.auth_service import AuthService
from xpos.services.currency_catalog import CurrencyCatalogService
from xpos.services.drawer_service import CashDrawerService
from xpos.services.operations_service import OperationsService
from xpos.services.shift_service import ShiftService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    auth: AuthService
    ledger: LedgerStore
    projector: BalanceProjector
    reconciliation: ReconciliationEngine
    shift_manager: ShiftManager
    drawers: CashDrawerService
    shifts: ShiftService
    catalog: CurrencyCatalogService
    operations: OperationsService


def build_container(
    db_path: Path | str,
    settings: Settings | None = None,
    audit_sink: AuditSink | None = None,
    logs_dir: Path | str | None = None,
) -> AppContainer:
    settings = settings or Settings()
    repo = SqliteRepository(
        db_path,
        busy_timeout=settings.busy_timeout,
        audit_sink=audit_sink or LoggingAuditSink(),
    )
    repo.init_db()

    auth = AuthService()
    ledger = LedgerStore()
    projector = BalanceProjector()
    reconciliation = ReconciliationEngine(ledger, tolerance=settings.variance_tolerance)
    shift_manager = ShiftManager(ledger, projector, reconciliation, auth)

    drawers = CashDrawerService(repo, ledger=ledger, reconciliation=reconciliation, auth=auth)
    shifts = ShiftService(repo, manager=shift_manager)
    catalog = CurrencyCatalogService(repo, url=settings.currency_catalog_url)
    operations = OperationsService(
        repo,
        db_path=db_path,
        logs_dir=logs_dir or Path(db_path).parent / "logs",
        ledger=ledger,
    )

    return AppContainer(
        repo=repo,
        auth=auth,
        ledger=ledger,
        projector=projector,
        reconciliation=reconciliation,
        shift_manager=shift_manager,
        drawers=drawers,
        shifts=shifts,
        catalog=catalog,
        operations=operations,
    )
