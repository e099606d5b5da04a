from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from xpos.domain.models import HealthReport
from xpos.engine.ledger import LedgerStore

log = logging.getLogger(__name__)


class OperationsService:
    def __init__(self, repo, db_path: Path | str, logs_dir: Path | str, ledger: LedgerStore | None = None):
        self.repo = repo
        self.db_path = Path(db_path)
        self.logs_dir = Path(logs_dir)
        self.ledger = ledger or LedgerStore()

    def run_health_check(self) -> HealthReport:
        integrity = self.repo.integrity_check()
        logs_count = len(list(self.logs_dir.glob("*.log"))) if self.logs_dir.exists() else 0
        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        with self.repo.unit_of_work(readonly=True) as uow:
            discrepancies = self.ledger.verify(uow)
        report = HealthReport(
            sqlite_integrity=integrity,
            db_size_bytes=size,
            logs_count=logs_count,
            ledger_entries=self.repo.count_ledger_entries(),
            ledger_discrepancies=len(discrepancies),
            generated_at=datetime.now().isoformat(timespec="seconds"),
            problems=[f"drawer={d.drawer_id} currency={d.currency_id} entry={d.entry_id}: {d.problem}" for d in discrepancies],
        )
        if integrity != "ok" or discrepancies:
            log.error("health_check_failed integrity=%s discrepancies=%s", integrity, len(discrepancies))
        return report

    def rebuild_drawer_balances(self, drawer_id: Optional[int] = None) -> int:
        with self.repo.unit_of_work() as uow:
            rows = self.ledger.rebuild_balances(uow, drawer_id)
        log.warning("drawer_balances_rebuilt drawer=%s rows=%s", drawer_id, rows)
        return rows
