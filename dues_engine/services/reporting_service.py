"""Read views over dues, payments, ledger and workflows.

Unit balance formula: opening_balance + sum(total_amount) - sum(paid_amount)
over dues in non-closed periods. Positive means the unit owes money.
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from sqlalchemy.orm import Session

from dues_engine.models.account import Account
from dues_engine.models.budget_category import BudgetCategory
from dues_engine.models.debt_workflow import DebtWorkflow
from dues_engine.models.due import UNPAID_STATUSES, Due
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.ledger_entry import EntryType, LedgerEntry
from dues_engine.models.site import Site
from dues_engine.models.unit import Unit
from dues_engine.services.currency import quantize_money, to_reporting
from dues_engine.services.debt_workflow import STAGE_LEGAL, STAGE_NAMES, STAGE_WARNING
from dues_engine.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return (part * 100 / whole).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class UnitBalance(NamedTuple):
    """Balance of a unit over its open periods."""

    unit_id: int
    opening_balance: Decimal
    previous_period_debt: Decimal
    current_period_dues: Decimal
    penalties: Decimal
    total_dues: Decimal
    total_paid: Decimal
    outstanding: Decimal
    balance: Decimal  # positive = owed by the unit
    oldest_unpaid_date: date | None


class FinancialSummary(NamedTuple):
    """Site totals for one fiscal period, in the reporting currency."""

    site_id: int
    fiscal_period_id: int
    total_planned: Decimal
    total_actual: Decimal
    budget_utilization: Decimal
    total_dues_generated: Decimal
    total_dues_paid: Decimal
    total_collected: Decimal
    collection_rate: Decimal
    total_income: Decimal
    total_expenses: Decimal
    net_result: Decimal
    units_in_warning: int
    units_in_legal: int


class DebtAlert(NamedTuple):
    """Active workflow at stage 2 or higher."""

    unit_id: int
    unit_label: str
    owner_name: str | None
    stage: int
    stage_name: str
    total_debt_amount: Decimal
    oldest_unpaid_date: date | None
    months_overdue: int
    legal_case_number: str | None


class ReportingService:
    """Derived read views consumed by presentation and access-control layers."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def unit_balance(self, unit_id: int) -> UnitBalance:
        """Compute a unit's balance over dues in non-closed periods.

        Raises:
            NotFoundError: If the unit does not exist
        """
        unit = self.db.query(Unit).filter(Unit.id == unit_id).first()
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")

        dues = (
            self.db.query(Due)
            .join(FiscalPeriod, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(Due.unit_id == unit.id, FiscalPeriod.status != PeriodStatus.CLOSED)
            .all()
        )
        previous_debt = sum((d.total_amount for d in dues if d.is_from_previous_period), ZERO)
        current_dues = sum((d.total_amount for d in dues if not d.is_from_previous_period), ZERO)
        penalties = sum((d.penalty_amount for d in dues), ZERO)
        total_dues = previous_debt + current_dues
        total_paid = sum((d.paid_amount for d in dues), ZERO)
        unpaid_dates = [d.due_date for d in dues if d.status in UNPAID_STATUSES]

        return UnitBalance(
            unit_id=unit.id,
            opening_balance=unit.opening_balance,
            previous_period_debt=previous_debt,
            current_period_dues=current_dues,
            penalties=penalties,
            total_dues=total_dues,
            total_paid=total_paid,
            outstanding=total_dues - total_paid,
            balance=unit.opening_balance + total_dues - total_paid,
            oldest_unpaid_date=min(unpaid_dates) if unpaid_dates else None,
        )

    def site_financial_summary(self, site_id: int, period_id: int) -> FinancialSummary:
        """Planned vs actual, collection rate and workflow counts for a period.

        Raises:
            NotFoundError: If the period does not exist
            ValidationError: If the period belongs to another site
        """
        period = self.db.query(FiscalPeriod).filter(FiscalPeriod.id == period_id).first()
        if period is None:
            raise NotFoundError(f"Fiscal period {period_id} not found")
        if period.site_id != site_id:
            raise ValidationError(f"Fiscal period {period.name} belongs to another site")

        categories = (
            self.db.query(BudgetCategory).filter(BudgetCategory.fiscal_period_id == period.id).all()
        )
        total_planned = sum((c.planned_amount for c in categories), ZERO)
        total_actual = sum((c.actual_amount for c in categories), ZERO)

        dues = self.db.query(Due).filter(Due.fiscal_period_id == period.id).all()
        total_dues = sum((d.total_amount for d in dues), ZERO)
        total_paid = sum((d.paid_amount for d in dues), ZERO)

        entries = (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.site_id == site_id, LedgerEntry.fiscal_period_id == period.id)
            .all()
        )
        total_income = ZERO
        total_expenses = ZERO
        total_collected = ZERO
        for entry in entries:
            if entry.entry_type == EntryType.INCOME.value:
                total_income += entry.amount_reporting
                if entry.payment_id is not None:
                    total_collected += entry.amount_reporting
            elif entry.entry_type == EntryType.EXPENSE.value:
                total_expenses += entry.amount_reporting

        workflows = (
            self.db.query(DebtWorkflow)
            .join(Unit, DebtWorkflow.unit_id == Unit.id)
            .filter(Unit.site_id == site_id, DebtWorkflow.is_active.is_(True))
            .all()
        )

        return FinancialSummary(
            site_id=site_id,
            fiscal_period_id=period.id,
            total_planned=total_planned,
            total_actual=total_actual,
            budget_utilization=_percentage(total_actual, total_planned),
            total_dues_generated=total_dues,
            total_dues_paid=total_paid,
            total_collected=total_collected,
            collection_rate=_percentage(total_paid, total_dues),
            total_income=total_income,
            total_expenses=total_expenses,
            net_result=total_income - total_expenses,
            units_in_warning=sum(1 for w in workflows if w.stage >= STAGE_WARNING),
            units_in_legal=sum(1 for w in workflows if w.stage >= STAGE_LEGAL),
        )

    def debt_alerts(self, site_id: int) -> list[DebtAlert]:
        """Active workflows at stage 2+, most severe and largest debt first."""
        rows = (
            self.db.query(DebtWorkflow, Unit)
            .join(Unit, DebtWorkflow.unit_id == Unit.id)
            .filter(
                Unit.site_id == site_id,
                DebtWorkflow.is_active.is_(True),
                DebtWorkflow.stage >= STAGE_WARNING,
            )
            .order_by(DebtWorkflow.stage.desc(), DebtWorkflow.total_debt_amount.desc())
            .all()
        )
        return [
            DebtAlert(
                unit_id=unit.id,
                unit_label=unit.label,
                owner_name=unit.owner_name,
                stage=workflow.stage,
                stage_name=STAGE_NAMES[workflow.stage],
                total_debt_amount=workflow.total_debt_amount,
                oldest_unpaid_date=workflow.oldest_unpaid_date,
                months_overdue=workflow.months_overdue,
                legal_case_number=workflow.legal_case_number,
            )
            for workflow, unit in rows
        ]

    def site_opening_balance(self, site_id: int) -> Decimal:
        """Sum of account initial balances in the reporting currency.

        Raises:
            NotFoundError: If the site does not exist
        """
        site = self.db.query(Site).filter(Site.id == site_id).first()
        if site is None:
            raise NotFoundError(f"Site {site_id} not found")
        total = ZERO
        for account in self.db.query(Account).filter(Account.site_id == site.id):
            if account.currency_code == site.reporting_currency:
                total += account.initial_balance
            else:
                total += to_reporting(account.initial_balance, account.initial_exchange_rate)
        return quantize_money(total)


__all__ = ["DebtAlert", "FinancialSummary", "ReportingService", "UnitBalance"]
