from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol

from xpos.domain.errors import ClosingNotPendingError, ShiftAlreadyActiveError, ShiftNotActiveError
from xpos.domain.models import (
    AuditEvent,
    CashDrawer,
    ClosingStatus,
    Currency,
    DrawerBalance,
    DrawerClosing,
    DrawerClosingLine,
    ExchangeTransaction,
    LedgerEntry,
    LedgerKind,
    LowBalanceAlert,
    Reconciliation,
    ReconciliationStatus,
    Shift,
    ShiftBalance,
    ShiftStatus,
    ShiftSummary,
    TransactionStatus,
    User,
)
from xpos.domain.money import from_minor, to_minor

log = logging.getLogger(__name__)

DRAWER_COLS = "id, uuid, name, location, active, low_balance_alert_minor, created_by, created_at, assigned_to"
LEDGER_COLS = (
    "id, uuid, drawer_id, currency_id, kind, amount_minor, balance_before_minor, balance_after_minor, "
    "reference_type, reference_id, notes, performed_by, created_at"
)
SHIFT_COLS = (
    "id, uuid, employee_id, drawer_id, status, start_time, end_time, "
    "opening_notes, closing_notes, handover_to, handover_notes"
)
RECON_COLS = (
    "id, uuid, drawer_id, currency_id, shift_id, expected_minor, actual_minor, difference_minor, "
    "status, notes, reconciled_by, created_at"
)
TX_COLS = (
    "id, uuid, shift_id, currency_in_id, currency_out_id, amount_in_minor, amount_out_minor, "
    "profit_minor, commission_minor, status, deleted_at, created_at"
)
DRAWER_UPDATABLE = {"name", "location", "active", "low_balance_alert_minor", "assigned_to"}
CLOSING_COLS = (
    "id, uuid, drawer_id, closed_by, opening_time, closing_time, status, notes, reviewed_by, review_notes"
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _money(value: Optional[int]) -> Optional[Decimal]:
    return None if value is None else from_minor(value)


def _drawer(r) -> CashDrawer:
    return CashDrawer(
        id=int(r[0]),
        uuid=str(r[1]),
        name=str(r[2]),
        location=r[3],
        active=int(r[4]),
        low_balance_alert=from_minor(r[5]),
        created_by=r[6],
        created_at=str(r[7]),
        assigned_to=r[8],
    )


def _ledger(r) -> LedgerEntry:
    return LedgerEntry(
        id=int(r[0]),
        uuid=str(r[1]),
        drawer_id=int(r[2]),
        currency_id=int(r[3]),
        kind=LedgerKind(r[4]),
        amount=from_minor(r[5]),
        balance_before=from_minor(r[6]),
        balance_after=from_minor(r[7]),
        reference_type=r[8],
        reference_id=r[9],
        notes=r[10],
        performed_by=int(r[11]),
        created_at=str(r[12]),
    )


def _shift(r) -> Shift:
    return Shift(
        id=int(r[0]),
        uuid=str(r[1]),
        employee_id=int(r[2]),
        drawer_id=r[3],
        status=ShiftStatus(r[4]),
        start_time=str(r[5]),
        end_time=r[6],
        opening_notes=r[7],
        closing_notes=r[8],
        handover_to=r[9],
        handover_notes=r[10],
    )


def _reconciliation(r) -> Reconciliation:
    return Reconciliation(
        id=int(r[0]),
        uuid=str(r[1]),
        drawer_id=int(r[2]),
        currency_id=int(r[3]),
        shift_id=r[4],
        expected_balance=from_minor(r[5]),
        actual_balance=from_minor(r[6]),
        difference=from_minor(r[7]),
        status=ReconciliationStatus(r[8]),
        notes=r[9],
        reconciled_by=int(r[10]),
        created_at=str(r[11]),
    )


def _transaction(r) -> ExchangeTransaction:
    return ExchangeTransaction(
        id=int(r[0]),
        uuid=str(r[1]),
        shift_id=int(r[2]),
        currency_in_id=int(r[3]),
        currency_out_id=int(r[4]),
        amount_in=from_minor(r[5]),
        amount_out=from_minor(r[6]),
        profit=from_minor(r[7]),
        commission=from_minor(r[8]),
        status=TransactionStatus(r[9]),
        deleted_at=r[10],
        created_at=str(r[11]),
    )


def _closing(r, lines: list[DrawerClosingLine]) -> DrawerClosing:
    return DrawerClosing(
        id=int(r[0]),
        uuid=str(r[1]),
        drawer_id=int(r[2]),
        closed_by=int(r[3]),
        opening_time=r[4],
        closing_time=str(r[5]),
        status=ClosingStatus(r[6]),
        notes=r[7],
        reviewed_by=r[8],
        review_notes=r[9],
        lines=tuple(lines),
    )


def _date_filters(column: str, start_date: Optional[str], end_date: Optional[str], clauses: list[str], params: list[Any]) -> None:
    if start_date:
        clauses.append(f"substr({column}, 1, 10) >= ?")
        params.append(start_date)
    if end_date:
        clauses.append(f"substr({column}, 1, 10) <= ?")
        params.append(end_date)


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def emit(self, event: AuditEvent) -> None: ...
    def get_user(self, user_id: int) -> Optional[User]: ...
    def get_currency(self, currency_id: int) -> Optional[Currency]: ...
    def get_drawer(self, drawer_id: int) -> Optional[CashDrawer]: ...
    def get_balance(self, drawer_id: int, currency_id: int) -> Optional[Decimal]: ...
    def write_balance(self, drawer_id: int, currency_id: int, balance: Decimal, actor_id: Optional[int]) -> None: ...
    def insert_ledger_entry(self, **fields: Any) -> LedgerEntry: ...
    def find_active_shift(self, employee_id: int) -> Optional[Shift]: ...
    def insert_shift(self, employee_id: int, drawer_id: Optional[int], opening_notes: Optional[str]) -> Shift: ...


class SqliteUnitOfWork:
    """One SQLite connection holding one transaction.

    Write units open with ``BEGIN IMMEDIATE`` so the database write lock is
    taken before the first read: check-then-write sequences inside the block
    are serialized against every other writer. Readonly units use a deferred
    ``BEGIN`` and see a consistent snapshot.

    Audit events queued with :meth:`emit` reach the sink only after COMMIT.
    """

    def __init__(self, db_path: str, busy_timeout: float = 10.0, audit_sink=None, readonly: bool = False):
        self.db_path = str(db_path)
        self.busy_timeout = float(busy_timeout)
        self.audit_sink = audit_sink
        self.readonly = readonly
        self.conn: sqlite3.Connection | None = None
        self.events: list[AuditEvent] = []

    def __enter__(self) -> "SqliteUnitOfWork":
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("BEGIN" if self.readonly else "BEGIN IMMEDIATE")
        except Exception:
            conn.close()
            raise
        self.conn = conn
        self.events = []
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self.conn
        self.conn = None
        try:
            if exc_type is None:
                conn.execute("COMMIT")
            elif conn.in_transaction:
                conn.execute("ROLLBACK")
        finally:
            conn.close()
        if exc_type is None:
            self._flush_events()
        else:
            self.events = []
        return None

    def emit(self, event: AuditEvent) -> None:
        if self.readonly:
            raise RuntimeError("Readonly unit of work cannot emit audit events.")
        self.events.append(event)

    def _flush_events(self) -> None:
        events, self.events = self.events, []
        if self.audit_sink is None:
            return
        for event in events:
            try:
                self.audit_sink.record(event)
            except Exception:
                # the transaction is already committed; the sink is best-effort
                log.exception("audit_sink_failed action=%s resource=%s", event.action, event.resource_id)

    def _execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        if self.conn is None:
            raise RuntimeError("Unit of work is not active.")
        return self.conn.execute(sql, params)

    # ---------- Users / currencies ----------
    def get_user(self, user_id: int) -> Optional[User]:
        r = self._execute(
            "SELECT id, username, full_name, role, active FROM users WHERE id=?",
            (int(user_id),),
        ).fetchone()
        if not r:
            return None
        return User(id=int(r[0]), username=str(r[1]), full_name=str(r[2]), role=str(r[3]), active=int(r[4]))

    def get_currency(self, currency_id: int) -> Optional[Currency]:
        r = self._execute(
            "SELECT id, code, name, symbol, active FROM currencies WHERE id=?",
            (int(currency_id),),
        ).fetchone()
        if not r:
            return None
        return Currency(id=int(r[0]), code=str(r[1]), name=str(r[2]), symbol=str(r[3]), active=int(r[4]))

    # ---------- Drawers ----------
    def get_drawer(self, drawer_id: int) -> Optional[CashDrawer]:
        r = self._execute(f"SELECT {DRAWER_COLS} FROM cash_drawers WHERE id=?", (int(drawer_id),)).fetchone()
        return _drawer(r) if r else None

    def insert_drawer(self, name: str, location: Optional[str], low_balance_alert: Decimal, created_by: int) -> CashDrawer:
        cur = self._execute(
            """
            INSERT INTO cash_drawers (uuid, name, location, active, low_balance_alert_minor, created_by, created_at)
            VALUES (?, ?, ?, 1, ?, ?, ?)
            """,
            (str(uuid.uuid4()), name, location, to_minor(low_balance_alert), int(created_by), utc_now_iso()),
        )
        return self.get_drawer(int(cur.lastrowid))

    def update_drawer(self, drawer_id: int, fields: dict[str, Any]) -> Optional[CashDrawer]:
        unknown = set(fields) - DRAWER_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update drawer columns: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{col}=?" for col in fields)
            self._execute(
                f"UPDATE cash_drawers SET {assignments} WHERE id=?",
                (*fields.values(), int(drawer_id)),
            )
        return self.get_drawer(drawer_id)

    def list_drawers(self, active: Optional[bool] = None) -> list[CashDrawer]:
        sql = f"SELECT {DRAWER_COLS} FROM cash_drawers"
        params: list[Any] = []
        if active is not None:
            sql += " WHERE active=?"
            params.append(1 if active else 0)
        rows = self._execute(sql + " ORDER BY name COLLATE NOCASE, id", params).fetchall()
        return [_drawer(r) for r in rows]

    # ---------- Drawer balances ----------
    def get_balance(self, drawer_id: int, currency_id: int) -> Optional[Decimal]:
        r = self._execute(
            "SELECT balance_minor FROM drawer_balances WHERE drawer_id=? AND currency_id=?",
            (int(drawer_id), int(currency_id)),
        ).fetchone()
        return from_minor(r[0]) if r else None

    def write_balance(self, drawer_id: int, currency_id: int, balance: Decimal, actor_id: Optional[int]) -> None:
        self._execute(
            """
            INSERT INTO drawer_balances (drawer_id, currency_id, balance_minor, last_updated, last_updated_by)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(drawer_id, currency_id) DO UPDATE SET
                balance_minor=excluded.balance_minor,
                last_updated=excluded.last_updated,
                last_updated_by=excluded.last_updated_by
            """,
            (int(drawer_id), int(currency_id), to_minor(balance), utc_now_iso(), actor_id),
        )

    def list_drawer_balances(self, drawer_id: Optional[int] = None, active_currencies: bool = False) -> list[DrawerBalance]:
        sql = """
            SELECT b.drawer_id, b.currency_id, c.code, b.balance_minor, b.last_updated, b.last_updated_by
            FROM drawer_balances b
            JOIN currencies c ON c.id = b.currency_id
        """
        clauses: list[str] = []
        params: list[Any] = []
        if drawer_id is not None:
            clauses.append("b.drawer_id=?")
            params.append(int(drawer_id))
        if active_currencies:
            clauses.append("c.active=1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(sql + where + " ORDER BY b.drawer_id, c.code", params).fetchall()
        return [
            DrawerBalance(
                drawer_id=int(r[0]),
                currency_id=int(r[1]),
                currency_code=str(r[2]),
                balance=from_minor(r[3]),
                last_updated=str(r[4]),
                last_updated_by=r[5],
            )
            for r in rows
        ]

    def low_balance_alerts(self) -> list[LowBalanceAlert]:
        rows = self._execute(
            """
            SELECT d.id, d.name, d.location, c.id, c.code, b.balance_minor, d.low_balance_alert_minor
            FROM drawer_balances b
            JOIN cash_drawers d ON d.id = b.drawer_id
            JOIN currencies c ON c.id = b.currency_id
            WHERE d.active=1 AND c.active=1 AND b.balance_minor < d.low_balance_alert_minor
            ORDER BY b.balance_minor ASC, d.id, c.code
            """
        ).fetchall()
        return [
            LowBalanceAlert(
                drawer_id=int(r[0]),
                drawer_name=str(r[1]),
                location=r[2],
                currency_id=int(r[3]),
                currency_code=str(r[4]),
                balance=from_minor(r[5]),
                threshold=from_minor(r[6]),
            )
            for r in rows
        ]

    # ---------- Ledger ----------
    def insert_ledger_entry(
        self,
        drawer_id: int,
        currency_id: int,
        kind: LedgerKind,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        performed_by: int,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerEntry:
        cur = self._execute(
            """
            INSERT INTO ledger_entries (
                uuid, drawer_id, currency_id, kind, amount_minor, balance_before_minor, balance_after_minor,
                reference_type, reference_id, notes, performed_by, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                int(drawer_id),
                int(currency_id),
                LedgerKind(kind).value,
                to_minor(amount),
                to_minor(balance_before),
                to_minor(balance_after),
                reference_type,
                reference_id,
                notes,
                int(performed_by),
                utc_now_iso(),
            ),
        )
        r = self._execute(f"SELECT {LEDGER_COLS} FROM ledger_entries WHERE id=?", (int(cur.lastrowid),)).fetchone()
        return _ledger(r)

    def list_ledger_entries(self, drawer_id: Optional[int] = None) -> list[LedgerEntry]:
        sql = f"SELECT {LEDGER_COLS} FROM ledger_entries"
        params: list[Any] = []
        if drawer_id is not None:
            sql += " WHERE drawer_id=?"
            params.append(int(drawer_id))
        rows = self._execute(sql + " ORDER BY drawer_id, currency_id, id", params).fetchall()
        return [_ledger(r) for r in rows]

    def ledger_totals(self, drawer_id: int, since: str) -> list[tuple[int, LedgerKind, Decimal]]:
        rows = self._execute(
            """
            SELECT currency_id, kind, SUM(amount_minor)
            FROM ledger_entries
            WHERE drawer_id=? AND created_at >= ?
            GROUP BY currency_id, kind
            ORDER BY currency_id, kind
            """,
            (int(drawer_id), since),
        ).fetchall()
        return [(int(r[0]), LedgerKind(r[1]), from_minor(r[2])) for r in rows]

    def ledger_history(
        self,
        drawer_id: int,
        currency_id: Optional[int],
        kind: Optional[LedgerKind],
        start_date: Optional[str],
        end_date: Optional[str],
        limit: int,
        offset: int,
    ) -> tuple[list[LedgerEntry], int]:
        clauses = ["drawer_id=?"]
        params: list[Any] = [int(drawer_id)]
        if currency_id is not None:
            clauses.append("currency_id=?")
            params.append(int(currency_id))
        if kind is not None:
            clauses.append("kind=?")
            params.append(LedgerKind(kind).value)
        _date_filters("created_at", start_date, end_date, clauses, params)
        where = " AND ".join(clauses)

        total = int(self._execute(f"SELECT COUNT(*) FROM ledger_entries WHERE {where}", params).fetchone()[0])
        rows = self._execute(
            f"SELECT {LEDGER_COLS} FROM ledger_entries WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
        return [_ledger(r) for r in rows], total

    def recent_ledger(self, drawer_id: int, limit: int = 20) -> list[LedgerEntry]:
        rows = self._execute(
            f"SELECT {LEDGER_COLS} FROM ledger_entries WHERE drawer_id=? ORDER BY id DESC LIMIT ?",
            (int(drawer_id), int(limit)),
        ).fetchall()
        return [_ledger(r) for r in rows]

    # ---------- Reconciliations ----------
    def insert_reconciliation(
        self,
        drawer_id: int,
        currency_id: int,
        expected: Decimal,
        actual: Decimal,
        difference: Decimal,
        status: ReconciliationStatus,
        reconciled_by: int,
        shift_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Reconciliation:
        cur = self._execute(
            """
            INSERT INTO reconciliations (
                uuid, drawer_id, currency_id, shift_id, expected_minor, actual_minor, difference_minor,
                status, notes, reconciled_by, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                int(drawer_id),
                int(currency_id),
                shift_id,
                to_minor(expected),
                to_minor(actual),
                to_minor(difference),
                ReconciliationStatus(status).value,
                notes,
                int(reconciled_by),
                utc_now_iso(),
            ),
        )
        r = self._execute(f"SELECT {RECON_COLS} FROM reconciliations WHERE id=?", (int(cur.lastrowid),)).fetchone()
        return _reconciliation(r)

    def list_reconciliations(self, drawer_id: Optional[int] = None, shift_id: Optional[int] = None) -> list[Reconciliation]:
        clauses: list[str] = []
        params: list[Any] = []
        if drawer_id is not None:
            clauses.append("drawer_id=?")
            params.append(int(drawer_id))
        if shift_id is not None:
            clauses.append("shift_id=?")
            params.append(int(shift_id))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(f"SELECT {RECON_COLS} FROM reconciliations{where} ORDER BY id", params).fetchall()
        return [_reconciliation(r) for r in rows]

    # ---------- Drawer closings ----------
    def insert_drawer_closing(
        self,
        drawer_id: int,
        closed_by: int,
        opening_time: Optional[str],
        status: ClosingStatus,
        notes: Optional[str],
        lines: list[DrawerClosingLine],
    ) -> DrawerClosing:
        now = utc_now_iso()
        cur = self._execute(
            """
            INSERT INTO drawer_closings (uuid, drawer_id, closed_by, opening_time, closing_time, status, notes, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                int(drawer_id),
                int(closed_by),
                opening_time,
                now,
                ClosingStatus(status).value,
                notes,
                now,
            ),
        )
        closing_id = int(cur.lastrowid)
        for line in lines:
            self._execute(
                """
                INSERT INTO drawer_closing_lines (closing_id, currency_id, expected_minor, actual_minor, variance_minor)
                VALUES (?, ?, ?, ?, ?)
                """,
                (closing_id, int(line.currency_id), to_minor(line.expected), to_minor(line.actual), to_minor(line.variance)),
            )
        return self.get_drawer_closing(closing_id)

    def _closing_lines(self, closing_id: int) -> list[DrawerClosingLine]:
        rows = self._execute(
            """
            SELECT currency_id, expected_minor, actual_minor, variance_minor
            FROM drawer_closing_lines
            WHERE closing_id=?
            ORDER BY currency_id
            """,
            (int(closing_id),),
        ).fetchall()
        return [
            DrawerClosingLine(
                currency_id=int(r[0]),
                expected=from_minor(r[1]),
                actual=from_minor(r[2]),
                variance=from_minor(r[3]),
            )
            for r in rows
        ]

    def get_drawer_closing(self, closing_id: int) -> Optional[DrawerClosing]:
        r = self._execute(f"SELECT {CLOSING_COLS} FROM drawer_closings WHERE id=?", (int(closing_id),)).fetchone()
        return _closing(r, self._closing_lines(int(r[0]))) if r else None

    def get_drawer_closing_by_uuid(self, closing_uuid: str) -> Optional[DrawerClosing]:
        r = self._execute(f"SELECT {CLOSING_COLS} FROM drawer_closings WHERE uuid=?", (str(closing_uuid),)).fetchone()
        return _closing(r, self._closing_lines(int(r[0]))) if r else None

    def review_drawer_closing(
        self,
        closing_id: int,
        status: ClosingStatus,
        reviewed_by: int,
        review_notes: Optional[str],
    ) -> DrawerClosing:
        cur = self._execute(
            """
            UPDATE drawer_closings
            SET status=?, reviewed_by=?, review_notes=?, updated_at=?
            WHERE id=? AND status='pending'
            """,
            (ClosingStatus(status).value, int(reviewed_by), review_notes, utc_now_iso(), int(closing_id)),
        )
        if cur.rowcount == 0:
            raise ClosingNotPendingError("Drawer closing is not pending review.")
        return self.get_drawer_closing(closing_id)

    def list_drawer_closings(
        self,
        drawer_id: Optional[int],
        status: Optional[ClosingStatus],
        limit: int,
        offset: int,
    ) -> tuple[list[DrawerClosing], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if drawer_id is not None:
            clauses.append("drawer_id=?")
            params.append(int(drawer_id))
        if status is not None:
            clauses.append("status=?")
            params.append(ClosingStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = int(self._execute(f"SELECT COUNT(*) FROM drawer_closings{where}", params).fetchone()[0])
        rows = self._execute(
            f"SELECT {CLOSING_COLS} FROM drawer_closings{where} ORDER BY closing_time DESC, id DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
        return [_closing(r, self._closing_lines(int(r[0]))) for r in rows], total

    # ---------- Shifts ----------
    def get_shift(self, shift_id: int) -> Optional[Shift]:
        r = self._execute(f"SELECT {SHIFT_COLS} FROM shifts WHERE id=?", (int(shift_id),)).fetchone()
        return _shift(r) if r else None

    def get_shift_by_uuid(self, shift_uuid: str) -> Optional[Shift]:
        r = self._execute(f"SELECT {SHIFT_COLS} FROM shifts WHERE uuid=?", (str(shift_uuid),)).fetchone()
        return _shift(r) if r else None

    def find_active_shift(self, employee_id: int) -> Optional[Shift]:
        r = self._execute(
            f"SELECT {SHIFT_COLS} FROM shifts WHERE employee_id=? AND status='active'",
            (int(employee_id),),
        ).fetchone()
        return _shift(r) if r else None

    def earliest_active_shift_start(self, drawer_id: int) -> Optional[str]:
        r = self._execute(
            "SELECT MIN(start_time) FROM shifts WHERE drawer_id=? AND status='active'",
            (int(drawer_id),),
        ).fetchone()
        return r[0] if r else None

    def insert_shift(self, employee_id: int, drawer_id: Optional[int], opening_notes: Optional[str]) -> Shift:
        try:
            cur = self._execute(
                """
                INSERT INTO shifts (uuid, employee_id, drawer_id, status, start_time, opening_notes)
                VALUES (?, ?, ?, 'active', ?, ?)
                """,
                (str(uuid.uuid4()), int(employee_id), drawer_id, utc_now_iso(), opening_notes),
            )
        except sqlite3.IntegrityError as e:
            if "shifts.employee_id" not in str(e):
                raise
            existing = self.find_active_shift(employee_id)
            raise ShiftAlreadyActiveError(
                "Employee already has an active shift.",
                active_shift_uuid=existing.uuid if existing else None,
            ) from e
        return self.get_shift(int(cur.lastrowid))

    def finish_shift(self, shift_id: int, status: ShiftStatus, closing_notes: Optional[str]) -> Shift:
        cur = self._execute(
            """
            UPDATE shifts
            SET status=?, end_time=?, closing_notes=?
            WHERE id=? AND status='active'
            """,
            (ShiftStatus(status).value, utc_now_iso(), closing_notes, int(shift_id)),
        )
        if cur.rowcount == 0:
            raise ShiftNotActiveError("Shift is not active.")
        return self.get_shift(shift_id)

    def set_handover(self, shift_id: int, to_employee_id: int, notes: Optional[str]) -> Shift:
        self._execute(
            "UPDATE shifts SET handover_to=?, handover_notes=? WHERE id=?",
            (int(to_employee_id), notes, int(shift_id)),
        )
        return self.get_shift(shift_id)

    def list_shifts(
        self,
        employee_id: Optional[int],
        status: Optional[ShiftStatus],
        start_date: Optional[str],
        end_date: Optional[str],
        limit: int,
        offset: int,
    ) -> tuple[list[Shift], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if employee_id is not None:
            clauses.append("employee_id=?")
            params.append(int(employee_id))
        if status is not None:
            clauses.append("status=?")
            params.append(ShiftStatus(status).value)
        _date_filters("start_time", start_date, end_date, clauses, params)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = int(self._execute(f"SELECT COUNT(*) FROM shifts{where}", params).fetchone()[0])
        rows = self._execute(
            f"SELECT {SHIFT_COLS} FROM shifts{where} ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
        return [_shift(r) for r in rows], total

    # ---------- Shift balances ----------
    def insert_shift_balance(self, shift_id: int, currency_id: int, opening_balance: Decimal) -> None:
        self._execute(
            "INSERT INTO shift_balances (shift_id, currency_id, opening_minor) VALUES (?, ?, ?)",
            (int(shift_id), int(currency_id), to_minor(opening_balance)),
        )

    def list_shift_balances(self, shift_id: int) -> list[ShiftBalance]:
        rows = self._execute(
            """
            SELECT shift_id, currency_id, opening_minor, closing_minor, expected_closing_minor, difference_minor
            FROM shift_balances
            WHERE shift_id=?
            ORDER BY currency_id
            """,
            (int(shift_id),),
        ).fetchall()
        return [
            ShiftBalance(
                shift_id=int(r[0]),
                currency_id=int(r[1]),
                opening_balance=from_minor(r[2]),
                closing_balance=_money(r[3]),
                expected_closing=_money(r[4]),
                difference=_money(r[5]),
            )
            for r in rows
        ]

    def upsert_shift_closing(self, shift_id: int, currency_id: int, closing: Decimal, expected: Decimal, difference: Decimal) -> None:
        self._execute(
            """
            INSERT INTO shift_balances (shift_id, currency_id, opening_minor, closing_minor, expected_closing_minor, difference_minor)
            VALUES (?, ?, 0, ?, ?, ?)
            ON CONFLICT(shift_id, currency_id) DO UPDATE SET
                closing_minor=excluded.closing_minor,
                expected_closing_minor=excluded.expected_closing_minor,
                difference_minor=excluded.difference_minor
            """,
            (int(shift_id), int(currency_id), to_minor(closing), to_minor(expected), to_minor(difference)),
        )

    # ---------- Shift summaries ----------
    def insert_zero_summary(self, shift_id: int) -> None:
        self._execute("INSERT INTO shift_summaries (shift_id) VALUES (?)", (int(shift_id),))

    def get_summary(self, shift_id: int) -> Optional[ShiftSummary]:
        r = self._execute(
            """
            SELECT shift_id, total_transactions, total_profit_minor, total_commission_minor,
                   cancelled_transactions, total_volume_in_minor, total_volume_out_minor
            FROM shift_summaries
            WHERE shift_id=?
            """,
            (int(shift_id),),
        ).fetchone()
        if not r:
            return None
        return ShiftSummary(
            shift_id=int(r[0]),
            total_transactions=int(r[1]),
            total_profit=from_minor(r[2]),
            total_commission=from_minor(r[3]),
            cancelled_transactions=int(r[4]),
            total_volume_in=from_minor(r[5]),
            total_volume_out=from_minor(r[6]),
        )

    def write_summary(self, summary: ShiftSummary) -> None:
        self._execute(
            """
            INSERT INTO shift_summaries (
                shift_id, total_transactions, total_profit_minor, total_commission_minor,
                cancelled_transactions, total_volume_in_minor, total_volume_out_minor
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(shift_id) DO UPDATE SET
                total_transactions=excluded.total_transactions,
                total_profit_minor=excluded.total_profit_minor,
                total_commission_minor=excluded.total_commission_minor,
                cancelled_transactions=excluded.cancelled_transactions,
                total_volume_in_minor=excluded.total_volume_in_minor,
                total_volume_out_minor=excluded.total_volume_out_minor
            """,
            (
                int(summary.shift_id),
                int(summary.total_transactions),
                to_minor(summary.total_profit),
                to_minor(summary.total_commission),
                int(summary.cancelled_transactions),
                to_minor(summary.total_volume_in),
                to_minor(summary.total_volume_out),
            ),
        )

    # ---------- Exchange transactions (read side) ----------
    def transaction_aggregate(self, shift_id: int) -> ShiftSummary:
        r = self._execute(
            """
            SELECT COUNT(*),
                   COALESCE(SUM(profit_minor), 0),
                   COALESCE(SUM(commission_minor), 0),
                   COALESCE(SUM(amount_in_minor), 0),
                   COALESCE(SUM(amount_out_minor), 0)
            FROM exchange_transactions
            WHERE shift_id=? AND status='completed' AND deleted_at IS NULL
            """,
            (int(shift_id),),
        ).fetchone()
        # cancelled rows are counted even when soft-deleted
        cancelled = self._execute(
            "SELECT COUNT(*) FROM exchange_transactions WHERE shift_id=? AND status='cancelled'",
            (int(shift_id),),
        ).fetchone()[0]
        return ShiftSummary(
            shift_id=int(shift_id),
            total_transactions=int(r[0]),
            total_profit=from_minor(r[1]),
            total_commission=from_minor(r[2]),
            cancelled_transactions=int(cancelled),
            total_volume_in=from_minor(r[3]),
            total_volume_out=from_minor(r[4]),
        )

    def transaction_flows(self, shift_id: int) -> list[tuple[int, int, Decimal, Decimal]]:
        rows = self._execute(
            """
            SELECT currency_in_id, currency_out_id, SUM(amount_in_minor), SUM(amount_out_minor)
            FROM exchange_transactions
            WHERE shift_id=? AND status='completed' AND deleted_at IS NULL
            GROUP BY currency_in_id, currency_out_id
            ORDER BY currency_in_id, currency_out_id
            """,
            (int(shift_id),),
        ).fetchall()
        return [(int(r[0]), int(r[1]), from_minor(r[2]), from_minor(r[3])) for r in rows]

    def list_transactions(self, shift_id: int) -> list[ExchangeTransaction]:
        rows = self._execute(
            f"SELECT {TX_COLS} FROM exchange_transactions WHERE shift_id=? AND deleted_at IS NULL ORDER BY id",
            (int(shift_id),),
        ).fetchall()
        return [_transaction(r) for r in rows]
