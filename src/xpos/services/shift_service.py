from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Iterable, Optional

from xpos.domain.errors import ShiftNotFoundError, ValidationError
from xpos.domain.models import (
    ActiveShift,
    EndShiftResult,
    HandoverResult,
    Page,
    Shift,
    ShiftDetails,
    ShiftStatus,
)
from xpos.engine.shifts import ShiftManager
from xpos.repositories.sqlite_repo import SqliteRepository
from xpos.repositories.unit_of_work import UnitOfWork
from xpos.services.pagination import iso_date, page_window

log = logging.getLogger("xpos.shifts")


class ShiftService:
    def __init__(
        self,
        repo: SqliteRepository,
        manager: ShiftManager | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.manager = manager or ShiftManager()
        self.uow_factory = uow_factory or (lambda: repo.unit_of_work())

    def start_shift(
        self,
        employee_id: int,
        drawer_id: Optional[int] = None,
        opening_balances: Iterable[dict] = (),
        notes: Optional[str] = None,
    ) -> Shift:
        """
        opening_balances: [{currency_id, amount}]
        """
        opening_balances = list(opening_balances)
        with self.uow_factory() as uow:
            shift = self.manager.start_shift(uow, employee_id, drawer_id, opening_balances, notes)
        log.info(
            "shift_started shift=%s employee=%s drawer=%s currencies=%s",
            shift.uuid,
            employee_id,
            drawer_id,
            len(opening_balances),
        )
        return shift

    def end_shift(
        self,
        shift_uuid: str,
        actor_id: int,
        closing_balances: Iterable[dict] = (),
        notes: Optional[str] = None,
    ) -> EndShiftResult:
        closing_balances = list(closing_balances)
        with self.uow_factory() as uow:
            result = self.manager.end_shift(uow, shift_uuid, actor_id, closing_balances, notes)
        level = logging.WARNING if result.has_variance else logging.INFO
        log.log(
            level,
            "shift_ended shift=%s actor=%s has_variance=%s transactions=%s",
            shift_uuid,
            actor_id,
            result.has_variance,
            result.summary.total_transactions,
        )
        return result

    def handover_shift(self, shift_uuid: str, to_employee_id: int, actor_id: int, notes: Optional[str] = None) -> HandoverResult:
        with self.uow_factory() as uow:
            result = self.manager.handover_shift(uow, shift_uuid, to_employee_id, actor_id, notes)
        log.info(
            "shift_handover shift=%s to_employee=%s new_shift=%s actor=%s",
            shift_uuid,
            to_employee_id,
            result.target.uuid,
            actor_id,
        )
        return result

    def abandon_shift(self, shift_uuid: str, actor_id: int, reason: Optional[str] = None) -> Shift:
        with self.uow_factory() as uow:
            shift = self.manager.abandon_shift(uow, shift_uuid, actor_id, reason)
        log.warning("shift_abandoned shift=%s actor=%s", shift_uuid, actor_id)
        return shift

    def get_expected_balances(self, shift_uuid: str) -> dict[int, Decimal]:
        """Preview of what end_shift would expect. Writes nothing."""
        with self.repo.unit_of_work(readonly=True) as uow:
            shift = self._shift(uow, shift_uuid)
            return self.manager.projector.expected_balances(uow, shift)

    def get_active_shift(self, employee_id: int) -> Optional[ActiveShift]:
        with self.repo.unit_of_work(readonly=True) as uow:
            shift = uow.find_active_shift(employee_id)
            if shift is None:
                return None
            running = uow.transaction_aggregate(shift.id)
            return ActiveShift(
                shift=shift,
                balances=tuple(uow.list_shift_balances(shift.id)),
                transaction_count=running.total_transactions,
                total_profit=running.total_profit,
            )

    def list_shifts(
        self,
        employee_id: Optional[int] = None,
        status: ShiftStatus | str | None = None,
        start_date=None,
        end_date=None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        page, limit, offset = page_window(page, limit)
        try:
            status_value = ShiftStatus(status) if status else None
        except ValueError as e:
            raise ValidationError(f"Unknown shift status '{status}'.") from e
        start = iso_date(start_date, "Start date")
        end = iso_date(end_date, "End date")
        with self.repo.unit_of_work(readonly=True) as uow:
            shifts, total = uow.list_shifts(employee_id, status_value, start, end, limit, offset)
        return Page(items=tuple(shifts), page=page, limit=limit, total=total)

    def get_shift_details(self, shift_uuid: str) -> ShiftDetails:
        with self.repo.unit_of_work(readonly=True) as uow:
            shift = self._shift(uow, shift_uuid)
            return ShiftDetails(
                shift=shift,
                balances=tuple(uow.list_shift_balances(shift.id)),
                summary=uow.get_summary(shift.id),
                transactions=tuple(uow.list_transactions(shift.id)),
            )

    def _shift(self, uow: UnitOfWork, shift_uuid: str) -> Shift:
        shift = uow.get_shift_by_uuid(shift_uuid)
        if shift is None:
            raise ShiftNotFoundError(f"Shift {shift_uuid} not found.")
        return shift
