from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional
import logging
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    db_path: Optional[Path] = None
    log_level: int = logging.INFO
    busy_timeout: float = 10.0
    variance_tolerance: Decimal = Decimal("0.01")
    currency_catalog_url: Optional[str] = None


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "ExchangePOS", db_path: Path | None = None) -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = db_path or base / "xpos.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    level_name = env.get("XPOS_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"XPOS_LOG_LEVEL must be a logging level name. Received: {level_name}")

    try:
        busy_timeout = float(env.get("XPOS_BUSY_TIMEOUT", "10"))
        tolerance = Decimal(env.get("XPOS_VARIANCE_TOLERANCE", "0.01"))
    except (ValueError, InvalidOperation) as e:
        raise ValueError(f"Invalid numeric setting: {e}") from e
    if busy_timeout <= 0:
        raise ValueError("XPOS_BUSY_TIMEOUT must be > 0.")
    if not tolerance.is_finite() or tolerance < 0:
        raise ValueError("XPOS_VARIANCE_TOLERANCE must be >= 0.")

    db_raw = env.get("XPOS_DB_PATH", "").strip()
    url = env.get("XPOS_CURRENCY_CATALOG_URL", "").strip()
    return Settings(
        db_path=Path(db_raw) if db_raw else None,
        log_level=level,
        busy_timeout=busy_timeout,
        variance_tolerance=tolerance,
        currency_catalog_url=url or None,
    )
