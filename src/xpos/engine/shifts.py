from __future__ import annotations

import logging
from typing import Iterable, Optional

from xpos.domain.errors import (
    AuthorizationError,
    EmployeeNotFoundError,
    ShiftAlreadyActiveError,
    ShiftNotActiveError,
    ShiftNotFoundError,
    TargetAlreadyActiveError,
    TargetNotFoundError,
)
from xpos.domain.models import (
    AuditEvent,
    EndShiftResult,
    HandoverResult,
    Severity,
    Shift,
    ShiftStatus,
)
from xpos.domain.money import ZERO
from xpos.engine.ledger import LedgerStore
from xpos.engine.projector import BalanceProjector
from xpos.engine.reconciliation import ReconciliationEngine
from xpos.repositories.unit_of_work import UnitOfWork
from xpos.services.auth_service import AuthService

log = logging.getLogger("xpos.shifts")

DEFAULT_ABANDON_REASON = "Abandoned by admin"


class ShiftManager:
    """Shift state machine: active -> completed | abandoned.

    Every operation runs inside the caller's unit of work; nothing here
    commits. ``end_shift`` never fails on variance, it reports it.
    """

    def __init__(
        self,
        ledger: LedgerStore | None = None,
        projector: BalanceProjector | None = None,
        reconciliation: ReconciliationEngine | None = None,
        auth: AuthService | None = None,
    ):
        self.ledger = ledger or LedgerStore()
        self.projector = projector or BalanceProjector()
        self.reconciliation = reconciliation or ReconciliationEngine(self.ledger)
        self.auth = auth or AuthService()

    def _active_shift(self, uow: UnitOfWork, shift_uuid: str) -> Shift:
        shift = uow.get_shift_by_uuid(shift_uuid)
        if shift is None:
            raise ShiftNotFoundError(f"Shift {shift_uuid} not found.")
        if shift.status is not ShiftStatus.ACTIVE:
            raise ShiftNotActiveError(f"Shift {shift_uuid} is already {shift.status.value}.")
        return shift

    def start_shift(
        self,
        uow: UnitOfWork,
        employee_id: int,
        drawer_id: Optional[int] = None,
        opening_balances: Iterable[dict] = (),
        notes: Optional[str] = None,
    ) -> Shift:
        employee = uow.get_user(employee_id)
        if employee is None or not employee.active:
            raise EmployeeNotFoundError(f"Employee {employee_id} not found or inactive.")

        active = uow.find_active_shift(employee_id)
        if active is not None:
            raise ShiftAlreadyActiveError(
                f"Employee already has an active shift: {active.uuid}",
                active_shift_uuid=active.uuid,
            )

        if drawer_id is not None:
            self.ledger.require_drawer(uow, drawer_id)
        openings = self.ledger.counted_balances(uow, opening_balances, require_active=True)

        shift = uow.insert_shift(employee_id, drawer_id, notes)
        uow.insert_zero_summary(shift.id)
        for currency_id, amount in openings:
            uow.insert_shift_balance(shift.id, currency_id, amount)

        uow.emit(
            AuditEvent(
                actor_id=employee_id,
                action="SHIFT_START",
                resource_type="shift",
                resource_id=shift.uuid,
                new_values={
                    "drawer_id": drawer_id,
                    "opening_balances": {str(c): str(a) for c, a in openings},
                },
            )
        )
        return shift

    def end_shift(
        self,
        uow: UnitOfWork,
        shift_uuid: str,
        actor_id: int,
        closing_balances: Iterable[dict] = (),
        notes: Optional[str] = None,
    ) -> EndShiftResult:
        shift = self._active_shift(uow, shift_uuid)
        actor = self.auth.resolve_actor(uow, actor_id)
        if shift.employee_id != actor.id and not self.auth.can(actor, "end_any_shift"):
            raise AuthorizationError("Only the shift owner or an admin can end this shift.")

        counts = self.ledger.counted_balances(uow, closing_balances, require_active=False)
        expected = self.projector.expected_balances(uow, shift)

        results = []
        for currency_id, counted in counts:
            results.append(
                self.reconciliation.record_shift_reconciliation(
                    uow,
                    shift,
                    currency_id,
                    expected.get(currency_id, ZERO),
                    counted,
                    actor.id,
                )
            )

        summary = uow.transaction_aggregate(shift.id)
        uow.write_summary(summary)
        ended = uow.finish_shift(shift.id, ShiftStatus.COMPLETED, notes)
        has_variance = any(abs(r.difference) > self.reconciliation.tolerance for r in results)

        uow.emit(
            AuditEvent(
                actor_id=actor.id,
                action="SHIFT_END",
                resource_type="shift",
                resource_id=shift.uuid,
                severity=Severity.WARNING if has_variance else Severity.INFO,
                old_values={"status": shift.status.value},
                new_values={
                    "status": ended.status.value,
                    "has_variance": has_variance,
                    "differences": {str(r.currency_id): str(r.difference) for r in results},
                    "total_transactions": summary.total_transactions,
                },
            )
        )
        return EndShiftResult(shift=ended, summary=summary, reconciliations=tuple(results), has_variance=has_variance)

    def handover_shift(
        self,
        uow: UnitOfWork,
        shift_uuid: str,
        to_employee_id: int,
        actor_id: int,
        notes: Optional[str] = None,
    ) -> HandoverResult:
        source = self._active_shift(uow, shift_uuid)

        target = uow.get_user(to_employee_id)
        if target is None or not target.active:
            raise TargetNotFoundError(f"Target employee {to_employee_id} not found or inactive.")
        if uow.find_active_shift(target.id) is not None:
            raise TargetAlreadyActiveError(f"Employee {target.username} already has an active shift.")

        source = uow.set_handover(source.id, target.id, notes)
        new_shift = uow.insert_shift(target.id, source.drawer_id, f"Handover from shift {source.uuid}")
        uow.insert_zero_summary(new_shift.id)
        # the incoming shift starts from what the outgoing one opened with
        for balance in uow.list_shift_balances(source.id):
            uow.insert_shift_balance(new_shift.id, balance.currency_id, balance.opening_balance)

        uow.emit(
            AuditEvent(
                actor_id=actor_id,
                action="SHIFT_HANDOVER",
                resource_type="shift",
                resource_id=source.uuid,
                new_values={"to_employee_id": target.id, "new_shift": new_shift.uuid},
            )
        )
        return HandoverResult(source=source, target=new_shift)

    def abandon_shift(
        self,
        uow: UnitOfWork,
        shift_uuid: str,
        actor_id: int,
        reason: Optional[str] = None,
    ) -> Shift:
        actor = self.auth.resolve_actor(uow, actor_id)
        self.auth.require_action(actor, "abandon_shift")

        shift = self._active_shift(uow, shift_uuid)
        reason_clean = (reason or "").strip() or DEFAULT_ABANDON_REASON
        abandoned = uow.finish_shift(shift.id, ShiftStatus.ABANDONED, reason_clean)

        uow.emit(
            AuditEvent(
                actor_id=actor.id,
                action="SHIFT_ABANDON",
                resource_type="shift",
                resource_id=shift.uuid,
                severity=Severity.WARNING,
                old_values={"status": shift.status.value},
                new_values={"status": abandoned.status.value, "reason": reason_clean},
            )
        )
        return abandoned
