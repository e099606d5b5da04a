from __future__ import annotations

import json
import logging
from dataclasses import asdict

from xpos.application.container import build_container
from xpos.config import get_app_paths, load_settings
from xpos.domain.errors import CatalogUnavailableError
from xpos.logging_config import setup_logging

log = logging.getLogger("xpos")


def main() -> int:
    settings = load_settings()
    paths = get_app_paths(db_path=settings.db_path)
    setup_logging(paths.logs_dir, level=settings.log_level)

    container = build_container(paths.db_path, settings=settings, logs_dir=paths.logs_dir)
    if settings.currency_catalog_url:
        try:
            container.catalog.refresh()
        except CatalogUnavailableError as e:
            log.error("catalog_unavailable error=%s", e)

    report = container.operations.run_health_check()
    log.info(
        "health_check integrity=%s ledger_entries=%s discrepancies=%s",
        report.sqlite_integrity,
        report.ledger_entries,
        report.ledger_discrepancies,
    )
    print(json.dumps(asdict(report), ensure_ascii=False, indent=2))
    return 0 if report.sqlite_integrity == "ok" and not report.ledger_discrepancies else 1


if __name__ == "__main__":
    raise SystemExit(main())
