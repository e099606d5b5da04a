from __future__ import annotations

import shutil
import sqlite3
import uuid
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from xpos.domain.errors import NotFoundError, ValidationError
from xpos.domain.models import Currency, Role, TransactionStatus
from xpos.domain.money import to_minor
from xpos.repositories.unit_of_work import SqliteUnitOfWork, utc_now_iso


class SqliteRepository:
    def __init__(self, db_path: Path | str, busy_timeout: float = 10.0, audit_sink=None):
        self.db_path = str(db_path)
        self.busy_timeout = float(busy_timeout)
        self.audit_sink = audit_sink

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def unit_of_work(self, readonly: bool = False) -> SqliteUnitOfWork:
        return SqliteUnitOfWork(
            self.db_path,
            busy_timeout=self.busy_timeout,
            audit_sink=self.audit_sink,
            readonly=readonly,
        )

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        backup_path = self._create_pre_migration_backup()
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_drawers_and_ledger),
                (2, self._migration_v2_shifts),
                (3, self._migration_v3_drawer_closings),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            conn.close()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_drawers_and_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                full_name TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL CHECK(role IN ('admin','employee')),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS currencies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                symbol TEXT NOT NULL DEFAULT '',
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cash_drawers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                location TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                low_balance_alert_minor INTEGER NOT NULL DEFAULT 100000 CHECK(low_balance_alert_minor >= 0),
                created_by INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY(created_by) REFERENCES users(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS drawer_balances (
                drawer_id INTEGER NOT NULL,
                currency_id INTEGER NOT NULL,
                balance_minor INTEGER NOT NULL DEFAULT 0 CHECK(balance_minor >= 0),
                last_updated TEXT NOT NULL,
                last_updated_by INTEGER,
                PRIMARY KEY (drawer_id, currency_id),
                FOREIGN KEY(drawer_id) REFERENCES cash_drawers(id),
                FOREIGN KEY(currency_id) REFERENCES currencies(id),
                FOREIGN KEY(last_updated_by) REFERENCES users(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                drawer_id INTEGER NOT NULL,
                currency_id INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK(kind IN ('deposit','withdrawal','adjustment')),
                amount_minor INTEGER NOT NULL,
                balance_before_minor INTEGER NOT NULL CHECK(balance_before_minor >= 0),
                balance_after_minor INTEGER NOT NULL CHECK(balance_after_minor >= 0),
                reference_type TEXT,
                reference_id TEXT,
                notes TEXT,
                performed_by INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                CHECK(kind = 'adjustment' OR amount_minor > 0),
                FOREIGN KEY(drawer_id) REFERENCES cash_drawers(id),
                FOREIGN KEY(currency_id) REFERENCES currencies(id),
                FOREIGN KEY(performed_by) REFERENCES users(id)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_ledger_drawer_created ON ledger_entries(drawer_id, created_at)"
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS reconciliations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                drawer_id INTEGER NOT NULL,
                currency_id INTEGER NOT NULL,
                expected_minor INTEGER NOT NULL,
                actual_minor INTEGER NOT NULL CHECK(actual_minor >= 0),
                difference_minor INTEGER NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('balanced','over','short')),
                notes TEXT,
                reconciled_by INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(drawer_id) REFERENCES cash_drawers(id),
                FOREIGN KEY(currency_id) REFERENCES currencies(id),
                FOREIGN KEY(reconciled_by) REFERENCES users(id)
            )
            """
        )

    def _migration_v2_shifts(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shifts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                employee_id INTEGER NOT NULL,
                drawer_id INTEGER,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','completed','abandoned')),
                start_time TEXT NOT NULL,
                end_time TEXT,
                opening_notes TEXT,
                closing_notes TEXT,
                handover_to INTEGER,
                handover_notes TEXT,
                FOREIGN KEY(employee_id) REFERENCES users(id),
                FOREIGN KEY(drawer_id) REFERENCES cash_drawers(id),
                FOREIGN KEY(handover_to) REFERENCES users(id)
            )
            """
        )
        # at most one active shift per employee, whatever the caller does
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_shifts_one_active_per_employee
            ON shifts(employee_id) WHERE status = 'active'
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shift_balances (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                shift_id INTEGER NOT NULL,
                currency_id INTEGER NOT NULL,
                opening_minor INTEGER NOT NULL DEFAULT 0 CHECK(opening_minor >= 0),
                closing_minor INTEGER CHECK(closing_minor IS NULL OR closing_minor >= 0),
                expected_closing_minor INTEGER,
                difference_minor INTEGER,
                UNIQUE(shift_id, currency_id),
                FOREIGN KEY(shift_id) REFERENCES shifts(id),
                FOREIGN KEY(currency_id) REFERENCES currencies(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shift_summaries (
                shift_id INTEGER PRIMARY KEY,
                total_transactions INTEGER NOT NULL DEFAULT 0,
                total_profit_minor INTEGER NOT NULL DEFAULT 0,
                total_commission_minor INTEGER NOT NULL DEFAULT 0,
                cancelled_transactions INTEGER NOT NULL DEFAULT 0,
                total_volume_in_minor INTEGER NOT NULL DEFAULT 0,
                total_volume_out_minor INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY(shift_id) REFERENCES shifts(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS exchange_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                shift_id INTEGER NOT NULL,
                currency_in_id INTEGER NOT NULL,
                currency_out_id INTEGER NOT NULL,
                amount_in_minor INTEGER NOT NULL CHECK(amount_in_minor > 0),
                amount_out_minor INTEGER NOT NULL CHECK(amount_out_minor > 0),
                profit_minor INTEGER NOT NULL DEFAULT 0,
                commission_minor INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'completed' CHECK(status IN ('completed','cancelled')),
                deleted_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(shift_id) REFERENCES shifts(id),
                FOREIGN KEY(currency_in_id) REFERENCES currencies(id),
                FOREIGN KEY(currency_out_id) REFERENCES currencies(id)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_exchange_transactions_shift ON exchange_transactions(shift_id)"
        )

        self._add_column_if_missing(cur, "reconciliations", "shift_id", "INTEGER REFERENCES shifts(id)")

    def _migration_v3_drawer_closings(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "cash_drawers", "assigned_to", "INTEGER REFERENCES users(id)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS drawer_closings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                drawer_id INTEGER NOT NULL,
                closed_by INTEGER NOT NULL,
                opening_time TEXT,
                closing_time TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending','completed','disputed')),
                notes TEXT,
                reviewed_by INTEGER,
                review_notes TEXT,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(drawer_id) REFERENCES cash_drawers(id),
                FOREIGN KEY(closed_by) REFERENCES users(id),
                FOREIGN KEY(reviewed_by) REFERENCES users(id)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_drawer_closings_drawer ON drawer_closings(drawer_id, closing_time)"
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS drawer_closing_lines (
                closing_id INTEGER NOT NULL,
                currency_id INTEGER NOT NULL,
                expected_minor INTEGER NOT NULL,
                actual_minor INTEGER NOT NULL CHECK(actual_minor >= 0),
                variance_minor INTEGER NOT NULL,
                PRIMARY KEY (closing_id, currency_id),
                FOREIGN KEY(closing_id) REFERENCES drawer_closings(id),
                FOREIGN KEY(currency_id) REFERENCES currencies(id)
            )
            """
        )

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    # ---------- Users (employee directory) ----------
    def add_user(self, username: str, full_name: str = "", role: str = "employee", active: bool = True) -> int:
        username_clean = username.strip()
        if not username_clean:
            raise ValidationError("Username is required.")
        if role not in {r.value for r in Role}:
            raise ValidationError(f"Unknown role '{role}'.")
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO users (username, full_name, role, active) VALUES (?, ?, ?, ?)",
            (username_clean, full_name.strip(), role, 1 if active else 0),
        )
        conn.commit()
        user_id = int(cur.lastrowid)
        conn.close()
        return user_id

    def set_user_active(self, user_id: int, active: bool) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE users SET active=? WHERE id=?", (1 if active else 0, int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Currency catalog mirror ----------
    def add_currency(self, code: str, name: str, symbol: str = "", active: bool = True) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO currencies (code, name, symbol, active) VALUES (?, ?, ?, ?)",
            (code.strip().upper(), name.strip(), symbol, 1 if active else 0),
        )
        conn.commit()
        currency_id = int(cur.lastrowid)
        conn.close()
        return currency_id

    def upsert_currency(self, code: str, name: str, symbol: str = "", active: bool = True) -> int:
        code_clean = code.strip().upper()
        if not code_clean:
            raise ValidationError("Currency code is required.")
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO currencies (code, name, symbol, active)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                name=excluded.name,
                symbol=excluded.symbol,
                active=excluded.active
            """,
            (code_clean, name.strip(), symbol, 1 if active else 0),
        )
        cur.execute("SELECT id FROM currencies WHERE code=?", (code_clean,))
        currency_id = int(cur.fetchone()[0])
        conn.commit()
        conn.close()
        return currency_id

    def list_currencies(self, active_only: bool = False) -> list[Currency]:
        conn = self._conn()
        cur = conn.cursor()
        sql = "SELECT id, code, name, symbol, active FROM currencies"
        if active_only:
            sql += " WHERE active=1"
        cur.execute(sql + " ORDER BY code")
        rows = cur.fetchall()
        conn.close()
        return [Currency(id=int(r[0]), code=str(r[1]), name=str(r[2]), symbol=str(r[3]), active=int(r[4])) for r in rows]

    def get_currency_by_code(self, code: str) -> Optional[Currency]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, code, name, symbol, active FROM currencies WHERE code=?", (code.strip().upper(),))
        r = cur.fetchone()
        conn.close()
        if not r:
            return None
        return Currency(id=int(r[0]), code=str(r[1]), name=str(r[2]), symbol=str(r[3]), active=int(r[4]))

    # ---------- Exchange transactions (written by the POS, read by shifts) ----------
    def record_exchange_transaction(
        self,
        shift_id: int,
        currency_in_id: int,
        currency_out_id: int,
        amount_in: Decimal | str | int,
        amount_out: Decimal | str | int,
        profit: Decimal | str | int = 0,
        commission: Decimal | str | int = 0,
        status: str = TransactionStatus.COMPLETED.value,
    ) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO exchange_transactions (
                uuid, shift_id, currency_in_id, currency_out_id, amount_in_minor, amount_out_minor,
                profit_minor, commission_minor, status, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                int(shift_id),
                int(currency_in_id),
                int(currency_out_id),
                to_minor(amount_in),
                to_minor(amount_out),
                to_minor(profit),
                to_minor(commission),
                TransactionStatus(status).value,
                utc_now_iso(),
            ),
        )
        conn.commit()
        tx_id = int(cur.lastrowid)
        conn.close()
        return tx_id

    def cancel_exchange_transaction(self, tx_id: int) -> None:
        self._update_transaction(tx_id, "UPDATE exchange_transactions SET status='cancelled' WHERE id=?")

    def soft_delete_exchange_transaction(self, tx_id: int) -> None:
        self._update_transaction(
            tx_id,
            "UPDATE exchange_transactions SET deleted_at=datetime('now') WHERE id=? AND deleted_at IS NULL",
        )

    def _update_transaction(self, tx_id: int, sql: str) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(sql, (int(tx_id),))
        changed = cur.rowcount
        conn.commit()
        conn.close()
        if not changed:
            raise NotFoundError(f"Exchange transaction {tx_id} not found.")

    # ---------- Operations ----------
    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"

    def count_ledger_entries(self) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM ledger_entries")
        count = int(cur.fetchone()[0])
        conn.close()
        return count
