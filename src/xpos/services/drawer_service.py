from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from xpos.domain.errors import ClosingNotFoundError, DrawerNotFoundError, EmployeeNotFoundError, ValidationError
from xpos.domain.models import (
    AuditEvent,
    CashDrawer,
    ClosingStatus,
    DrawerClosing,
    DrawerDetails,
    DrawerReconciliation,
    DrawerStatus,
    LedgerEntry,
    LedgerKind,
    LowBalanceAlert,
    Page,
    Severity,
)
from xpos.domain.money import parse_amount, to_minor
from xpos.engine.ledger import LedgerStore, coerce_kind
from xpos.engine.reconciliation import ReconciliationEngine
from xpos.repositories.sqlite_repo import SqliteRepository
from xpos.repositories.unit_of_work import UnitOfWork
from xpos.services.auth_service import AuthService
from xpos.services.pagination import iso_date, page_window

log = logging.getLogger("xpos.ledger")

DEFAULT_LOW_BALANCE_ALERT = "1000.00"
RECENT_ENTRIES = 20


class CashDrawerService:
    def __init__(
        self,
        repo: SqliteRepository,
        ledger: LedgerStore | None = None,
        reconciliation: ReconciliationEngine | None = None,
        auth: AuthService | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.ledger = ledger or LedgerStore()
        self.reconciliation = reconciliation or ReconciliationEngine(self.ledger)
        self.auth = auth or AuthService()
        self.uow_factory = uow_factory or (lambda: repo.unit_of_work())

    # ---------- Drawer management ----------
    def create_drawer(
        self,
        actor_id: int,
        name: str,
        location: Optional[str] = None,
        low_balance_alert: object = DEFAULT_LOW_BALANCE_ALERT,
    ) -> CashDrawer:
        name_clean = (name or "").strip()
        if not name_clean:
            raise ValidationError("Drawer name is required.")
        alert = parse_amount(low_balance_alert, "Low balance alert")
        if alert < 0:
            raise ValidationError("Low balance alert must be >= 0.")

        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "manage_drawers")
            drawer = uow.insert_drawer(name_clean, (location or "").strip() or None, alert, actor.id)
            uow.emit(
                AuditEvent(
                    actor_id=actor.id,
                    action="CREATE",
                    resource_type="cash_drawer",
                    resource_id=str(drawer.id),
                    new_values={"name": drawer.name, "location": drawer.location, "low_balance_alert": str(alert)},
                )
            )
        log.info("drawer_created drawer=%s name=%s actor=%s", drawer.id, drawer.name, actor_id)
        return drawer

    def update_drawer(
        self,
        actor_id: int,
        drawer_id: int,
        name: Optional[str] = None,
        location: Optional[str] = None,
        active: Optional[bool] = None,
        low_balance_alert: object = None,
    ) -> CashDrawer:
        fields: dict[str, object] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Drawer name cannot be empty.")
            fields["name"] = name.strip()
        if location is not None:
            fields["location"] = location.strip() or None
        if active is not None:
            fields["active"] = 1 if active else 0
        if low_balance_alert is not None:
            alert = parse_amount(low_balance_alert, "Low balance alert")
            if alert < 0:
                raise ValidationError("Low balance alert must be >= 0.")
            fields["low_balance_alert_minor"] = to_minor(alert)

        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "manage_drawers")
            before = self.ledger.require_drawer(uow, drawer_id, active=False)
            after = uow.update_drawer(drawer_id, fields)
            uow.emit(
                AuditEvent(
                    actor_id=actor.id,
                    action="UPDATE",
                    resource_type="cash_drawer",
                    resource_id=str(drawer_id),
                    old_values=_drawer_values(before),
                    new_values=_drawer_values(after),
                )
            )
        log.info("drawer_updated drawer=%s fields=%s actor=%s", drawer_id, ",".join(sorted(fields)), actor_id)
        return after

    def assign_drawer(self, actor_id: int, drawer_id: int, employee_id: Optional[int]) -> CashDrawer:
        """Assign a drawer to an employee, or clear the assignment with ``None``."""
        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "manage_drawers")
            before = self.ledger.require_drawer(uow, drawer_id)
            if employee_id is not None:
                employee = uow.get_user(employee_id)
                if employee is None or not employee.active:
                    raise EmployeeNotFoundError(f"Employee {employee_id} not found or inactive.")
                employee_id = employee.id
            after = uow.update_drawer(drawer_id, {"assigned_to": employee_id})
            uow.emit(
                AuditEvent(
                    actor_id=actor.id,
                    action="DRAWER_ASSIGN",
                    resource_type="cash_drawer",
                    resource_id=str(drawer_id),
                    old_values={"assigned_to": before.assigned_to},
                    new_values={"assigned_to": after.assigned_to},
                )
            )
        log.info("drawer_assigned drawer=%s employee=%s actor=%s", drawer_id, employee_id, actor_id)
        return after

    def list_drawers(self, active: Optional[bool] = None) -> list[CashDrawer]:
        with self.repo.unit_of_work(readonly=True) as uow:
            return uow.list_drawers(active)

    def get_drawer(self, drawer_id: int) -> DrawerDetails:
        with self.repo.unit_of_work(readonly=True) as uow:
            drawer = uow.get_drawer(drawer_id)
            if drawer is None:
                raise DrawerNotFoundError(f"Cash drawer {drawer_id} not found.")
            return DrawerDetails(
                drawer=drawer,
                balances=tuple(uow.list_drawer_balances(drawer_id)),
                recent_entries=tuple(uow.recent_ledger(drawer_id, RECENT_ENTRIES)),
            )

    def get_drawer_status(self, drawer_id: int) -> DrawerStatus:
        with self.repo.unit_of_work(readonly=True) as uow:
            drawer = self.ledger.require_drawer(uow, drawer_id)
            assignee = uow.get_user(drawer.assigned_to) if drawer.assigned_to is not None else None
            return DrawerStatus(
                drawer=drawer,
                assigned_to_name=assignee.full_name if assignee else None,
                balances=tuple(uow.list_drawer_balances(drawer_id, active_currencies=True)),
            )

    # ---------- Cash movements ----------
    def deposit(self, actor_id: int, drawer_id: int, currency_id: int, amount: object, notes: Optional[str] = None) -> LedgerEntry:
        return self._movement(actor_id, drawer_id, currency_id, LedgerKind.DEPOSIT, amount, notes)

    def withdraw(self, actor_id: int, drawer_id: int, currency_id: int, amount: object, notes: Optional[str] = None) -> LedgerEntry:
        return self._movement(actor_id, drawer_id, currency_id, LedgerKind.WITHDRAWAL, amount, notes)

    def _movement(
        self,
        actor_id: int,
        drawer_id: int,
        currency_id: int,
        kind: LedgerKind,
        amount: object,
        notes: Optional[str],
    ) -> LedgerEntry:
        action, permission, severity = {
            LedgerKind.DEPOSIT: ("CASH_DEPOSIT", "deposit", Severity.INFO),
            LedgerKind.WITHDRAWAL: ("CASH_WITHDRAWAL", "withdraw", Severity.WARNING),
        }[kind]
        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, permission)
            entry = self.ledger.apply(uow, drawer_id, currency_id, kind, amount, actor.id, notes=notes)
            uow.emit(_movement_event(actor.id, action, severity, entry))
        log.info(
            "cash_%s drawer=%s currency=%s amount=%s balance=%s actor=%s",
            kind.value,
            drawer_id,
            currency_id,
            entry.amount,
            entry.balance_after,
            actor_id,
        )
        return entry

    def adjust(self, actor_id: int, drawer_id: int, currency_id: int, new_balance: object, reason: str) -> LedgerEntry:
        """Set a drawer balance to an absolute value. Admin only, reason required."""
        reason_clean = (reason or "").strip()
        if not reason_clean:
            raise ValidationError("Adjustment reason is required.")

        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "adjust_drawer")
            entry = self.ledger.set_balance(uow, drawer_id, currency_id, new_balance, actor.id, notes=reason_clean)
            uow.emit(_movement_event(actor.id, "CASH_ADJUSTMENT", Severity.CRITICAL, entry))
        log.warning(
            "cash_adjustment drawer=%s currency=%s delta=%s balance=%s actor=%s",
            drawer_id,
            currency_id,
            entry.amount,
            entry.balance_after,
            actor_id,
        )
        return entry

    def reconcile(
        self,
        actor_id: int,
        drawer_id: int,
        currency_id: int,
        actual_balance: object,
        notes: Optional[str] = None,
    ) -> DrawerReconciliation:
        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "reconcile_drawer")
            result = self.reconciliation.reconcile_drawer(uow, drawer_id, currency_id, actual_balance, actor.id, notes)
        rec = result.reconciliation
        log.info(
            "drawer_reconciled drawer=%s currency=%s expected=%s actual=%s status=%s actor=%s",
            drawer_id,
            currency_id,
            rec.expected_balance,
            rec.actual_balance,
            rec.status.value,
            actor_id,
        )
        return result

    # ---------- End-of-day closings ----------
    def submit_closing(
        self,
        actor_id: int,
        drawer_id: int,
        actual_balances: Iterable[dict],
        notes: Optional[str] = None,
    ) -> DrawerClosing:
        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "close_drawer")
            closing = self.reconciliation.record_drawer_closing(uow, drawer_id, actual_balances, actor.id, notes)
        log_fn = log.info if closing.status is ClosingStatus.COMPLETED else log.warning
        log_fn("drawer_closing drawer=%s closing=%s status=%s actor=%s", drawer_id, closing.uuid, closing.status.value, actor_id)
        return closing

    def review_closing(
        self,
        actor_id: int,
        closing_uuid: str,
        status: ClosingStatus | str,
        notes: Optional[str] = None,
    ) -> DrawerClosing:
        """Settle a pending closing as ``completed`` or ``disputed``. Admin only."""
        try:
            decision = ClosingStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown closing status '{status}'.") from e
        if decision is ClosingStatus.PENDING:
            raise ValidationError("A review must complete or dispute the closing.")

        with self.uow_factory() as uow:
            actor = self.auth.resolve_actor(uow, actor_id)
            self.auth.require_action(actor, "review_closing")
            closing = uow.get_drawer_closing_by_uuid(closing_uuid)
            if closing is None:
                raise ClosingNotFoundError(f"Drawer closing {closing_uuid} not found.")
            reviewed = uow.review_drawer_closing(closing.id, decision, actor.id, (notes or "").strip() or None)
            uow.emit(
                AuditEvent(
                    actor_id=actor.id,
                    action="CLOSING_REVIEW",
                    resource_type="drawer_closing",
                    resource_id=reviewed.uuid,
                    severity=Severity.WARNING if decision is ClosingStatus.DISPUTED else Severity.INFO,
                    old_values={"status": closing.status.value},
                    new_values={"status": reviewed.status.value, "notes": reviewed.review_notes},
                )
            )
        log.info("closing_reviewed closing=%s status=%s actor=%s", closing_uuid, decision.value, actor_id)
        return reviewed

    def get_closing(self, closing_uuid: str) -> DrawerClosing:
        with self.repo.unit_of_work(readonly=True) as uow:
            closing = uow.get_drawer_closing_by_uuid(closing_uuid)
        if closing is None:
            raise ClosingNotFoundError(f"Drawer closing {closing_uuid} not found.")
        return closing

    def list_closings(
        self,
        drawer_id: Optional[int] = None,
        status: ClosingStatus | str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page:
        page, limit, offset = page_window(page, limit)
        try:
            status_value = ClosingStatus(status) if status else None
        except ValueError as e:
            raise ValidationError(f"Unknown closing status '{status}'.") from e
        with self.repo.unit_of_work(readonly=True) as uow:
            closings, total = uow.list_drawer_closings(drawer_id, status_value, limit, offset)
        return Page(items=tuple(closings), page=page, limit=limit, total=total)

    # ---------- Reporting ----------
    def history(
        self,
        drawer_id: int,
        currency_id: Optional[int] = None,
        kind: LedgerKind | str | None = None,
        start_date=None,
        end_date=None,
        page: int = 1,
        limit: int = 50,
    ) -> Page:
        page, limit, offset = page_window(page, limit)
        kind_value = coerce_kind(kind) if kind else None
        start = iso_date(start_date, "Start date")
        end = iso_date(end_date, "End date")
        with self.repo.unit_of_work(readonly=True) as uow:
            self.ledger.require_drawer(uow, drawer_id, active=False)
            entries, total = uow.ledger_history(drawer_id, currency_id, kind_value, start, end, limit, offset)
        return Page(items=tuple(entries), page=page, limit=limit, total=total)

    def low_balance_alerts(self) -> list[LowBalanceAlert]:
        with self.repo.unit_of_work(readonly=True) as uow:
            return uow.low_balance_alerts()


def _drawer_values(drawer: CashDrawer) -> dict[str, object]:
    return {
        "name": drawer.name,
        "location": drawer.location,
        "active": bool(drawer.active),
        "low_balance_alert": str(drawer.low_balance_alert),
        "assigned_to": drawer.assigned_to,
    }


def _movement_event(actor_id: int, action: str, severity: Severity, entry: LedgerEntry) -> AuditEvent:
    return AuditEvent(
        actor_id=actor_id,
        action=action,
        resource_type="cash_drawer",
        resource_id=str(entry.drawer_id),
        severity=severity,
        old_values={"currency_id": entry.currency_id, "balance": str(entry.balance_before)},
        new_values={
            "currency_id": entry.currency_id,
            "balance": str(entry.balance_after),
            "amount": str(entry.amount),
            "entry": entry.uuid,
        },
    )
