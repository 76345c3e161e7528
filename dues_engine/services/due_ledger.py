"""Due ledger: generation, re-pricing, status and allocation primitives for dues."""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.orm import Session

from dues_engine.config import get_settings
from dues_engine.models.due import UNPAID_STATUSES, Due, DueStatus
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.ledger_entry import LedgerEntry
from dues_engine.models.payment import Payment
from dues_engine.models.unit import Unit
from dues_engine.services import atomic
from dues_engine.services.allocation_service import AllocationService
from dues_engine.services.audit_service import AuditService
from dues_engine.services.currency import quantize_money
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.unit_locks import get_unit_locks

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Oldest month first; carried-forward debt before the regular due of the same month
FIFO_ORDER = (Due.month_date.asc(), Due.is_from_previous_period.desc(), Due.id.asc())


def add_months(day: date, months: int) -> date:
    """Shift a date by whole calendar months, clamping to the month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def month_starts(start_date: date, end_date: date) -> list[date]:
    """List the month dates of a period: start_date + k months while < end_date."""
    months = []
    k = 0
    while True:
        month = add_months(start_date, k)
        if month >= end_date:
            return months
        months.append(month)
        k += 1


def months_between(start: date, end: date) -> int:
    """Whole calendar months elapsed from start to end (negative if end < start)."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end >= start and end.day < start.day:
        months -= 1
    elif end < start and end.day > start.day:
        months += 1
    return months


def derive_status(
    paid_amount: Decimal, total_amount: Decimal, due_date: date, as_of: date | None = None
) -> DueStatus:
    """Status of a due as a pure function of paid vs total.

    paid >= total -> paid; 0 < paid < total -> partial; nothing paid ->
    overdue once due_date has passed, pending before that.
    """
    if paid_amount >= total_amount:
        return DueStatus.PAID
    if paid_amount > 0:
        return DueStatus.PARTIAL
    if due_date < (as_of or date.today()):
        return DueStatus.OVERDUE
    return DueStatus.PENDING


def _normalize_description(text: str | None) -> str:
    return " ".join((text or "").split()).lower()


@dataclass(frozen=True)
class AppliedDue:
    """One FIFO allocation of a payment to a due."""

    due_id: int | None
    month_date: date
    amount_applied: Decimal
    dues_currency: str

    def to_record(self) -> dict[str, Any]:
        """JSON-safe form stored in Payment.applied_to_dues."""
        return {
            "due_id": self.due_id,
            "month_date": self.month_date.isoformat(),
            "amount_applied": str(self.amount_applied),
            "dues_currency": self.dues_currency,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "AppliedDue":
        return cls(
            due_id=record.get("due_id"),
            month_date=date.fromisoformat(record["month_date"]),
            amount_applied=Decimal(record["amount_applied"]),
            dues_currency=record["dues_currency"],
        )


class DueLedgerService:
    """Service owning the per-unit monthly dues of fiscal periods.

    Public operations run as one unit of work each. Methods documented as
    primitives do not commit and are called from inside other operations.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.allocation = AllocationService()

    # ------------------------------------------------------------------ lookups

    def get_period(self, period_id: int) -> FiscalPeriod:
        period = self.db.query(FiscalPeriod).filter(FiscalPeriod.id == period_id).first()
        if period is None:
            raise NotFoundError(f"Fiscal period {period_id} not found")
        return period

    def get_unit(self, unit_id: int) -> Unit:
        unit = self.db.query(Unit).filter(Unit.id == unit_id).first()
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")
        return unit

    def get_due(self, due_id: int) -> Due:
        due = self.db.query(Due).filter(Due.id == due_id).first()
        if due is None:
            raise NotFoundError(f"Due {due_id} not found")
        return due

    def get_unit_dues(self, unit_id: int, period_id: int | None = None) -> list[Due]:
        """Get a unit's dues in FIFO order, optionally limited to one period."""
        query = self.db.query(Due).filter(Due.unit_id == unit_id)
        if period_id is not None:
            query = query.filter(Due.fiscal_period_id == period_id)
        return query.order_by(*FIFO_ORDER).all()

    def outstanding_dues(
        self, unit_id: int, currency_code: str | None = None, lock: bool = False
    ) -> list[Due]:
        """Get a unit's unpaid dues in non-closed periods, oldest first.

        Args:
            unit_id: Unit to look up
            currency_code: Only dues in this currency (optional)
            lock: Take row locks (SELECT ... FOR UPDATE) on the dues

        Returns:
            Dues with status pending, partial or overdue in FIFO order
        """
        query = (
            self.db.query(Due)
            .join(FiscalPeriod, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(
                Due.unit_id == unit_id,
                Due.status.in_(UNPAID_STATUSES),
                FiscalPeriod.status != PeriodStatus.CLOSED,
            )
        )
        if currency_code is not None:
            query = query.filter(Due.currency_code == currency_code)
        query = query.order_by(*FIFO_ORDER)
        if lock:
            query = query.with_for_update(of=Due)
        return query.all()

    def _active_units(self, site_id: int) -> list[Unit]:
        return (
            self.db.query(Unit)
            .filter(Unit.site_id == site_id, Unit.is_active.is_(True))
            .order_by(Unit.id)
            .all()
        )

    def _open_period(self, period_id: int) -> FiscalPeriod:
        period = self.get_period(period_id)
        if period.status == PeriodStatus.CLOSED:
            raise ConsistencyError(f"Fiscal period {period.name} is closed")
        return period

    # --------------------------------------------------------------- generation

    def calculate_monthly_amounts(self, period_id: int) -> dict[int, Decimal]:
        """Per-unit monthly due from the period budget and the site distribution method.

        Returns:
            Dict mapping unit_id to monthly amount; sums to total_budget / 12
        """
        period = self.get_period(period_id)
        site = period.site
        return self.allocation.monthly_amounts(
            period.total_budget,
            self._active_units(site.id),
            site.distribution_method,
        )

    def generate_dues(
        self,
        period_id: int,
        monthly_amount: Decimal | None = None,
        currency_code: str | None = None,
        actor_id: int | None = None,
    ) -> int:
        """Ensure every active unit has one due per month of the period.

        Existing (unit, month) dues are never touched, so the call is safe to
        repeat and picks up units added since the last run.

        Args:
            period_id: Fiscal period to fill
            monthly_amount: Flat amount per unit (default: distribute total_budget)
            currency_code: Dues currency (default: existing dues, then site currency)
            actor_id: Actor for audit stamping

        Returns:
            Number of dues created

        Raises:
            NotFoundError: If the period does not exist
            ConsistencyError: If the period is closed
            ValidationError: If monthly_amount is negative
        """
        period = self._open_period(period_id)

        if monthly_amount is not None:
            monthly_amount = quantize_money(monthly_amount)
            if monthly_amount < 0:
                raise ValidationError(f"monthly_amount must not be negative, got {monthly_amount}")
            amounts = {unit.id: monthly_amount for unit in self._active_units(period.site_id)}
        else:
            amounts = self.calculate_monthly_amounts(period_id)

        with atomic(self.db):
            created = self._create_missing_dues(period, amounts, currency_code)
            if created:
                AuditService.log(
                    self.db, "fiscal_period", period.id, "generate_dues", actor_id,
                    {"created": created},
                )

        logger.info("Generated %d dues for period %s", created, period.name)
        return created

    def _create_missing_dues(
        self,
        period: FiscalPeriod,
        amounts: dict[int, Decimal],
        currency_code: str | None,
    ) -> int:
        existing_dues = (
            self.db.query(Due.unit_id, Due.month_date, Due.currency_code)
            .filter(Due.fiscal_period_id == period.id, Due.is_from_previous_period.is_(False))
            .all()
        )
        existing = {(unit_id, month) for unit_id, month, _ in existing_dues}
        currency = (
            currency_code
            or (existing_dues[0].currency_code if existing_dues else None)
            or period.site.reporting_currency
        )

        offset = timedelta(days=get_settings().due_day_offset)
        today = date.today()
        created = 0
        for unit_id, amount in amounts.items():
            for month in month_starts(period.start_date, period.end_date):
                if (unit_id, month) in existing:
                    continue
                due_date = month + offset
                self.db.add(
                    Due(
                        unit_id=unit_id,
                        fiscal_period_id=period.id,
                        month_date=month,
                        due_date=due_date,
                        base_amount=amount,
                        penalty_amount=ZERO,
                        paid_amount=ZERO,
                        currency_code=currency,
                        is_from_previous_period=False,
                        status=derive_status(ZERO, amount, due_date, today).value,
                    )
                )
                created += 1
        self.db.flush()
        return created

    # --------------------------------------------------------------- re-pricing

    def set_monthly_amount(
        self,
        unit_id: int,
        period_id: int,
        amount: Decimal,
        currency_code: str,
        reallocate: bool = True,
        actor_id: int | None = None,
    ) -> int:
        """Re-price one unit's regular dues in a period.

        Returns:
            Number of dues updated
        """
        period = self._open_period(period_id)
        unit = self.get_unit(unit_id)
        if unit.site_id != period.site_id:
            raise ValidationError(f"Unit {unit.label} does not belong to site of {period.name}")
        return self._reprice(period, {unit.id: amount}, currency_code, reallocate, actor_id)

    def set_all_units_monthly_amount(
        self,
        period_id: int,
        amount: Decimal,
        currency_code: str,
        reallocate: bool = True,
        actor_id: int | None = None,
    ) -> int:
        """Re-price every active unit's regular dues in a period to one amount."""
        period = self._open_period(period_id)
        amounts = {unit.id: amount for unit in self._active_units(period.site_id)}
        return self._reprice(period, amounts, currency_code, reallocate, actor_id)

    def set_varied_monthly_amounts(
        self,
        period_id: int,
        amounts: dict[int, Decimal],
        currency_code: str,
        reallocate: bool = True,
        actor_id: int | None = None,
    ) -> int:
        """Re-price several units, each to its own monthly amount."""
        period = self._open_period(period_id)
        site_unit_ids = {
            unit_id for (unit_id,) in self.db.query(Unit.id).filter(Unit.site_id == period.site_id)
        }
        unknown = set(amounts) - site_unit_ids
        if unknown:
            raise ValidationError(
                f"Units {sorted(unknown)} do not belong to site of {period.name}"
            )
        return self._reprice(period, amounts, currency_code, reallocate, actor_id)

    def _reprice(
        self,
        period: FiscalPeriod,
        amounts: dict[int, Decimal],
        currency_code: str,
        reallocate: bool,
        actor_id: int | None,
    ) -> int:
        if not currency_code:
            raise ValidationError("currency_code is required")
        amounts = {unit_id: quantize_money(amount) for unit_id, amount in amounts.items()}
        negative = [unit_id for unit_id, amount in amounts.items() if amount < 0]
        if negative:
            raise ValidationError(f"Monthly amount must not be negative (units {negative})")
        if not amounts:
            return 0

        with get_unit_locks().hold_many(amounts), atomic(self.db):
            self._create_missing_dues(period, amounts, currency_code)
            dues = (
                self.db.query(Due)
                .filter(
                    Due.fiscal_period_id == period.id,
                    Due.unit_id.in_(list(amounts)),
                    Due.is_from_previous_period.is_(False),
                )
                .with_for_update()
                .all()
            )

            # Check the new state of every due before writing any of them
            for due in dues:
                if due.currency_code != currency_code and due.paid_amount > 0:
                    raise ConsistencyError(
                        f"Due {due.id} has {due.paid_amount} {due.currency_code} allocated; "
                        f"reverse its payments before switching to {currency_code}"
                    )
                new_total = amounts[due.unit_id] + due.penalty_amount
                if not reallocate and due.paid_amount > new_total:
                    raise ConsistencyError(
                        f"Re-pricing due {due.id} to {new_total} would leave "
                        f"paid {due.paid_amount} above total"
                    )

            today = date.today()
            for due in dues:
                due.base_amount = amounts[due.unit_id]
                due.currency_code = currency_code
                due.status = derive_status(
                    due.paid_amount, due.total_amount, due.due_date, today
                ).value

            if reallocate:
                for unit_id in sorted(amounts):
                    self.reallocate_unit(unit_id)

            AuditService.log(
                self.db, "fiscal_period", period.id, "reprice_dues", actor_id,
                {"units": len(amounts), "dues": len(dues), "currency": currency_code},
            )

        logger.info(
            "Re-priced %d dues of %d unit(s) in period %s", len(dues), len(amounts), period.name
        )
        return len(dues)

    # ----------------------------------------------------------------- deletion

    def force_delete_dues(
        self,
        period_id: int,
        description: str | None = None,
        actor_id: int | None = None,
    ) -> int:
        """Delete a period's dues, unlinking payment and ledger references first.

        Payments keep their allocation records (with due_id cleared) and
        ledger entries keep their rows, so cash history is preserved.

        Args:
            period_id: Fiscal period whose dues are deleted
            description: Only delete dues with this description (case and
                whitespace insensitive)
            actor_id: Actor for audit stamping

        Returns:
            Number of dues deleted
        """
        period = self.get_period(period_id)
        dues = self.db.query(Due).filter(Due.fiscal_period_id == period.id).all()
        if description is not None:
            target = _normalize_description(description)
            dues = [due for due in dues if _normalize_description(due.description) == target]
        if not dues:
            return 0

        due_ids = {due.id for due in dues}
        unit_ids = {due.unit_id for due in dues}

        with get_unit_locks().hold_many(unit_ids), atomic(self.db):
            payments = self.db.query(Payment).filter(Payment.unit_id.in_(unit_ids)).all()
            for payment in payments:
                records = payment.applied_to_dues or []
                if any(record.get("due_id") in due_ids for record in records):
                    # JSON column: assign a new list so the change is tracked
                    payment.applied_to_dues = [
                        {**record, "due_id": None} if record.get("due_id") in due_ids else record
                        for record in records
                    ]

            entries = self.db.query(LedgerEntry).filter(LedgerEntry.due_id.in_(due_ids)).all()
            for entry in entries:
                entry.due_id = None

            for due in dues:
                self.db.delete(due)

            AuditService.log(
                self.db, "fiscal_period", period.id, "force_delete_dues", actor_id,
                {"deleted": len(dues), "description": description},
            )

        logger.warning("Force-deleted %d dues from period %s", len(dues), period.name)
        return len(dues)

    # ----------------------------------------------------- status and penalties

    def mark_overdue(self, site_id: int, as_of: date | None = None) -> int:
        """Re-derive the status of a site's unpaid dues as of a date.

        Returns:
            Number of dues whose status changed
        """
        as_of = as_of or date.today()
        dues = (
            self.db.query(Due)
            .join(Unit, Due.unit_id == Unit.id)
            .join(FiscalPeriod, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(
                Unit.site_id == site_id,
                Due.status.in_(UNPAID_STATUSES),
                FiscalPeriod.status != PeriodStatus.CLOSED,
            )
            .all()
        )
        changed = 0
        with atomic(self.db):
            for due in dues:
                status = derive_status(due.paid_amount, due.total_amount, due.due_date, as_of).value
                if status != due.status:
                    due.status = status
                    changed += 1
        logger.info("Marked %d dues of site %s with a new status", changed, site_id)
        return changed

    def apply_penalties(
        self, period_id: int, as_of: date | None = None, actor_id: int | None = None
    ) -> int:
        """Charge the site late penalty on dues overdue past the threshold.

        The penalty is base_amount x penalty_percentage / 100, charged once
        per due (not compounded).

        Returns:
            Number of dues that received a penalty
        """
        period = self._open_period(period_id)
        site = period.site
        as_of = as_of or date.today()
        if site.penalty_percentage <= 0:
            return 0

        dues = (
            self.db.query(Due)
            .filter(
                Due.fiscal_period_id == period.id,
                Due.status.in_(UNPAID_STATUSES),
                Due.penalty_amount == 0,
                Due.base_amount > 0,
            )
            .all()
        )
        penalized = 0
        with atomic(self.db):
            for due in dues:
                if months_between(due.due_date, as_of) < site.penalty_months_threshold:
                    continue
                due.penalty_amount = quantize_money(
                    due.base_amount * site.penalty_percentage / Decimal(100)
                )
                due.status = derive_status(
                    due.paid_amount, due.total_amount, due.due_date, as_of
                ).value
                penalized += 1
            if penalized:
                AuditService.log(
                    self.db, "fiscal_period", period.id, "apply_penalties", actor_id,
                    {"dues": penalized, "percentage": str(site.penalty_percentage)},
                )
        logger.info("Applied penalties to %d dues in period %s", penalized, period.name)
        return penalized

    # ------------------------------------------------------ allocation primitives

    def record_allocation(self, due: Due, amount: Decimal, as_of: date | None = None) -> None:
        """Add a payment allocation to a due (primitive, no commit).

        Raises:
            ConsistencyError: If the due would be paid above its total
        """
        if amount <= 0:
            raise ValidationError(f"Allocation amount must be positive, got {amount}")
        new_paid = due.paid_amount + amount
        if new_paid > due.total_amount:
            raise ConsistencyError(
                f"Allocating {amount} to due {due.id} would exceed its total {due.total_amount}"
            )
        due.paid_amount = new_paid
        due.status = derive_status(new_paid, due.total_amount, due.due_date, as_of).value

    def allocate_fifo(
        self, dues: Iterable[Due], amount: Decimal, as_of: date | None = None
    ) -> tuple[list[AppliedDue], Decimal]:
        """Apply an amount to dues in the given order (primitive, no commit).

        Args:
            dues: Dues already sorted oldest first
            amount: Amount in the dues currency

        Returns:
            (allocations made, amount left over)
        """
        remaining = quantize_money(amount)
        applied = []
        for due in dues:
            if remaining <= 0:
                break
            balance = due.total_amount - due.paid_amount
            if balance <= 0:
                continue
            portion = min(remaining, balance)
            self.record_allocation(due, portion, as_of)
            applied.append(AppliedDue(due.id, due.month_date, portion, due.currency_code))
            remaining -= portion
        return applied, remaining

    def release_allocations(
        self, records: Iterable[dict[str, Any]], as_of: date | None = None
    ) -> list[Due]:
        """Subtract stored allocations from their dues (primitive, no commit).

        Records whose due was force-deleted (due_id cleared) are skipped.

        Raises:
            ConsistencyError: If a referenced due is missing or has less paid
                than the allocation being released
        """
        touched = []
        for record in records:
            allocation = AppliedDue.from_record(record)
            if allocation.due_id is None:
                continue
            due = (
                self.db.query(Due).filter(Due.id == allocation.due_id).with_for_update().first()
            )
            if due is None:
                raise ConsistencyError(f"Allocated due {allocation.due_id} no longer exists")
            if allocation.amount_applied > due.paid_amount:
                raise ConsistencyError(
                    f"Cannot release {allocation.amount_applied} from due {due.id}: "
                    f"only {due.paid_amount} paid"
                )
            due.paid_amount = due.paid_amount - allocation.amount_applied
            due.status = derive_status(
                due.paid_amount, due.total_amount, due.due_date, as_of
            ).value
            touched.append(due)
        return touched

    def reallocate_unit(self, unit_id: int, as_of: date | None = None) -> int:
        """Re-apply a unit's live payments FIFO over its open dues (primitive, no commit).

        Allocations to dues in closed periods (or to force-deleted dues) stay
        as recorded; the rest of each payment is replayed in payment order and
        the allocation list and overpayment are rewritten.

        Returns:
            Number of payments replayed
        """
        open_dues = (
            self.db.query(Due)
            .join(FiscalPeriod, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(Due.unit_id == unit_id, FiscalPeriod.status != PeriodStatus.CLOSED)
            .order_by(*FIFO_ORDER)
            .with_for_update(of=Due)
            .all()
        )
        open_ids = {due.id for due in open_dues}
        for due in open_dues:
            due.paid_amount = ZERO

        payments = (
            self.db.query(Payment)
            .filter(Payment.unit_id == unit_id, Payment.reversed_at.is_(None))
            .order_by(Payment.payment_date.asc(), Payment.id.asc())
            .all()
        )
        for payment in payments:
            kept = [r for r in payment.applied_to_dues or [] if r.get("due_id") not in open_ids]
            kept_total = sum((Decimal(r["amount_applied"]) for r in kept), ZERO)
            candidates = [due for due in open_dues if due.currency_code == payment.dues_currency]
            applied, leftover = self.allocate_fifo(
                candidates, payment.amount_in_dues_currency - kept_total, as_of
            )
            payment.applied_to_dues = kept + [allocation.to_record() for allocation in applied]
            payment.overpayment = leftover

        for due in open_dues:
            due.status = derive_status(
                due.paid_amount, due.total_amount, due.due_date, as_of
            ).value

        logger.debug("Reallocated %d payment(s) of unit %s", len(payments), unit_id)
        return len(payments)


__all__ = [
    "AppliedDue",
    "DueLedgerService",
    "FIFO_ORDER",
    "add_months",
    "derive_status",
    "month_starts",
    "months_between",
]
