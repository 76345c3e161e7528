"""Fiscal period lifecycle and year-end rollover."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from dues_engine.models.balance_transfer import BalanceTransfer, TransferType
from dues_engine.models.debt_workflow import DebtWorkflow
from dues_engine.models.due import UNPAID_STATUSES, Due
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.payment import Payment
from dues_engine.models.site import Site
from dues_engine.models.unit import Unit
from dues_engine.services import atomic
from dues_engine.services.audit_service import AuditService
from dues_engine.services.currency import quantize_money
from dues_engine.services.debt_workflow import STAGE_WARNING
from dues_engine.services.due_ledger import DueLedgerService, derive_status
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.unit_locks import get_unit_locks

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

CARRIED_DEBT_DESCRIPTION = "Debt from previous period"


@dataclass
class RolloverResult:
    """Counts of balance transfers written by a period close."""

    transfers_created: int = 0
    debt_transfers: int = 0
    credit_transfers: int = 0
    legal_flags: int = 0


class FiscalPeriodService:
    """Service for fiscal period creation, activation and closing.

    Status only moves forward: draft -> active -> closed.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.dues = DueLedgerService(db)

    def get_by_id(self, period_id: int) -> FiscalPeriod:
        period = self.db.query(FiscalPeriod).filter(FiscalPeriod.id == period_id).first()
        if period is None:
            raise NotFoundError(f"Fiscal period {period_id} not found")
        return period

    def get_site_periods(self, site_id: int) -> list[FiscalPeriod]:
        return (
            self.db.query(FiscalPeriod)
            .filter(FiscalPeriod.site_id == site_id)
            .order_by(FiscalPeriod.start_date.asc())
            .all()
        )

    def get_period_containing(self, site_id: int, day: date) -> FiscalPeriod | None:
        """Get the site's period whose [start_date, end_date) contains a date."""
        return (
            self.db.query(FiscalPeriod)
            .filter(
                FiscalPeriod.site_id == site_id,
                FiscalPeriod.start_date <= day,
                FiscalPeriod.end_date > day,
            )
            .order_by(FiscalPeriod.start_date.desc())
            .first()
        )

    def create_period(
        self,
        site_id: int,
        name: str,
        start_date: date,
        end_date: date,
        total_budget: Decimal = ZERO,
        actor_id: int | None = None,
    ) -> FiscalPeriod:
        """Create a draft fiscal period.

        Raises:
            ValidationError: If end_date <= start_date, the name is empty or the
                budget negative
            NotFoundError: If the site does not exist
        """
        if end_date <= start_date:
            logger.error(
                "Rejected period %r: end %s is not after start %s", name, end_date, start_date
            )
            raise ValidationError(f"end_date {end_date} must be after start_date {start_date}")
        if not name or not name.strip():
            raise ValidationError("Period name is required")
        total_budget = quantize_money(total_budget)
        if total_budget < 0:
            raise ValidationError(f"total_budget must not be negative, got {total_budget}")
        if self.db.query(Site).filter(Site.id == site_id).first() is None:
            raise NotFoundError(f"Site {site_id} not found")

        with atomic(self.db):
            period = FiscalPeriod(
                site_id=site_id,
                name=name.strip(),
                start_date=start_date,
                end_date=end_date,
                status=PeriodStatus.DRAFT,
                total_budget=total_budget,
            )
            self.db.add(period)
            self.db.flush()
            AuditService.log(
                self.db, "fiscal_period", period.id, "create", actor_id,
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        logger.info("Created fiscal period %s (%s to %s)", period.name, start_date, end_date)
        return period

    def activate_period(
        self,
        period_id: int,
        monthly_amount: Decimal | None = None,
        currency_code: str | None = None,
        actor_id: int | None = None,
    ) -> int:
        """Move a draft period to active and generate its dues.

        Returns:
            Number of dues generated

        Raises:
            ConsistencyError: If the period is not a draft
        """
        period = self.get_by_id(period_id)
        if period.status != PeriodStatus.DRAFT:
            raise ConsistencyError(
                f"Only draft periods can be activated ({period.name} is {period.status.value})"
            )

        with atomic(self.db):
            period.status = PeriodStatus.ACTIVE
            created = self.dues.generate_dues(period.id, monthly_amount, currency_code, actor_id)
            AuditService.log(
                self.db, "fiscal_period", period.id, "activate", actor_id, {"dues_created": created}
            )

        logger.info("Activated fiscal period %s with %d dues", period.name, created)
        return created

    def close_period(
        self,
        closing_period_id: int,
        new_period_id: int,
        actor_id: int | None = None,
    ) -> RolloverResult:
        """Close a period and carry each unit's balance and legal state forward.

        Per unit: balance = opening_balance + sum of unpaid due amounts in the
        closing period - overpayments of payments attributed to it. A debt
        becomes one carried-forward due in the new period; a credit becomes
        the unit's negative opening balance. An active workflow at stage 2+
        gets a legal_flag transfer and moves to the new period.

        Holds every unit lock of the site, so no payment is applied while the
        balances are read.

        Returns:
            RolloverResult with the number of balance transfers written

        Raises:
            NotFoundError: Missing period
            ValidationError: Periods of different sites, same period, or the
                new period starting before the closing one ends
            ConsistencyError: Closing period not active, new period closed,
                or a unit with dues in several currencies
        """
        closing = self.get_by_id(closing_period_id)
        new_period = self.get_by_id(new_period_id)
        if closing.id == new_period.id:
            raise ValidationError("A period cannot roll over into itself")
        if closing.site_id != new_period.site_id:
            raise ValidationError("Periods belong to different sites")
        if new_period.start_date < closing.end_date:
            raise ValidationError(
                f"New period {new_period.name} starts before {closing.name} ends"
            )
        if closing.status != PeriodStatus.ACTIVE:
            raise ConsistencyError(
                f"Only active periods can be closed ({closing.name} is {closing.status.value})"
            )
        if new_period.status == PeriodStatus.CLOSED:
            raise ConsistencyError(f"Target period {new_period.name} is already closed")

        site = closing.site
        unit_query = self.db.query(Unit.id).filter(Unit.site_id == site.id).order_by(Unit.id)
        unit_ids = [unit_id for (unit_id,) in unit_query]
        result = RolloverResult()

        with get_unit_locks().hold_many(unit_ids), atomic(self.db):
            units = self.db.query(Unit).filter(Unit.id.in_(unit_ids)).order_by(Unit.id).all()
            for unit in units:
                self._roll_unit(unit, site, closing, new_period, result)

            closing.status = PeriodStatus.CLOSED
            closing.closed_at = datetime.now(timezone.utc)
            AuditService.log(
                self.db, "fiscal_period", closing.id, "close", actor_id,
                {
                    "new_period_id": new_period.id,
                    "transfers": result.transfers_created,
                    "debt": result.debt_transfers,
                    "credit": result.credit_transfers,
                    "legal_flags": result.legal_flags,
                },
            )

        logger.info(
            "Closed period %s into %s: %d transfers (%d debt, %d credit, %d legal)",
            closing.name, new_period.name, result.transfers_created,
            result.debt_transfers, result.credit_transfers, result.legal_flags,
        )
        return result

    def _roll_unit(
        self,
        unit: Unit,
        site: Site,
        closing: FiscalPeriod,
        new_period: FiscalPeriod,
        result: RolloverResult,
    ) -> None:
        dues = (
            self.db.query(Due)
            .filter(Due.unit_id == unit.id, Due.fiscal_period_id == closing.id)
            .order_by(Due.due_date.asc(), Due.id.asc())
            .with_for_update()
            .all()
        )
        payments = (
            self.db.query(Payment)
            .filter(
                Payment.unit_id == unit.id,
                Payment.fiscal_period_id == closing.id,
                Payment.reversed_at.is_(None),
            )
            .all()
        )

        currencies = {due.currency_code for due in dues} | {p.dues_currency for p in payments}
        if len(currencies) > 1:
            raise ConsistencyError(
                f"Unit {unit.label} has {closing.name} balances in several currencies: "
                f"{sorted(currencies)}"
            )
        currency = currencies.pop() if currencies else site.reporting_currency

        unpaid = sum((due.total_amount - due.paid_amount for due in dues), ZERO)
        credit = sum((payment.overpayment for payment in payments), ZERO)
        balance = quantize_money(unit.opening_balance + unpaid - credit)

        if balance > 0:
            oldest_unpaid = next(
                (due.due_date for due in dues if due.status in UNPAID_STATUSES),
                new_period.start_date,
            )
            self._carry_debt(unit, closing, new_period, balance, currency, oldest_unpaid)
            self._add_transfer(unit, closing, new_period, TransferType.DEBT, balance, currency)
            result.debt_transfers += 1
            unit.opening_balance = ZERO
        elif balance < 0:
            self._add_transfer(unit, closing, new_period, TransferType.CREDIT, -balance, currency)
            result.credit_transfers += 1
            unit.opening_balance = balance
        else:
            unit.opening_balance = ZERO

        workflow = (
            self.db.query(DebtWorkflow)
            .filter(DebtWorkflow.unit_id == unit.id, DebtWorkflow.is_active.is_(True))
            .order_by(DebtWorkflow.id.desc())
            .first()
        )
        if workflow is not None and workflow.stage >= STAGE_WARNING:
            self.db.add(
                BalanceTransfer(
                    unit_id=unit.id,
                    from_fiscal_period_id=closing.id,
                    to_fiscal_period_id=new_period.id,
                    transfer_type=TransferType.LEGAL_FLAG.value,
                    amount=None,
                    legal_stage=workflow.stage,
                    description=f"Legal status continuity - stage {workflow.stage}",
                )
            )
            workflow.fiscal_period_id = new_period.id
            result.legal_flags += 1
            result.transfers_created += 1

        if balance != 0:
            result.transfers_created += 1

    def _carry_debt(
        self,
        unit: Unit,
        closing: FiscalPeriod,
        new_period: FiscalPeriod,
        balance: Decimal,
        currency: str,
        oldest_unpaid: date,
    ) -> Due:
        carried = (
            self.db.query(Due)
            .filter(
                Due.unit_id == unit.id,
                Due.fiscal_period_id == new_period.id,
                Due.month_date == new_period.start_date,
                Due.is_from_previous_period.is_(True),
            )
            .first()
        )
        if carried is not None:
            # Two closings into one period share the single carried-forward due
            if carried.currency_code != currency:
                raise ConsistencyError(
                    f"Unit {unit.label} already carries {carried.currency_code} debt "
                    f"into {new_period.name}"
                )
            carried.base_amount = carried.base_amount + balance
            carried.due_date = min(carried.due_date, oldest_unpaid)
        else:
            carried = Due(
                unit_id=unit.id,
                fiscal_period_id=new_period.id,
                month_date=new_period.start_date,
                due_date=oldest_unpaid,
                base_amount=balance,
                penalty_amount=ZERO,
                paid_amount=ZERO,
                currency_code=currency,
                is_from_previous_period=True,
                previous_period_id=closing.id,
                description=CARRIED_DEBT_DESCRIPTION,
            )
            self.db.add(carried)
        carried.status = derive_status(
            carried.paid_amount, carried.total_amount, carried.due_date
        ).value
        return carried

    def _add_transfer(
        self,
        unit: Unit,
        closing: FiscalPeriod,
        new_period: FiscalPeriod,
        transfer_type: TransferType,
        amount: Decimal,
        currency: str,
    ) -> None:
        self.db.add(
            BalanceTransfer(
                unit_id=unit.id,
                from_fiscal_period_id=closing.id,
                to_fiscal_period_id=new_period.id,
                transfer_type=transfer_type.value,
                amount=amount,
                currency_code=currency,
                description=f"Balance carried from {closing.name}",
            )
        )


__all__ = ["FiscalPeriodService", "RolloverResult", "CARRIED_DEBT_DESCRIPTION"]
