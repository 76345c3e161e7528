"""Debt workflow: per-unit collection stages driven by the age of unpaid dues.

Stage thresholds (months since the oldest unpaid due date):
    < 3  -> 1 standard
    3-5  -> 2 warning
    6-8  -> 3 letter sent
    >= 9 -> 4 legal action

Recomputation only escalates. A workflow leaves its stage only by manual
resolution or by the unit paying off every unpaid due.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from dues_engine.models.debt_workflow import DebtWorkflow
from dues_engine.models.due import UNPAID_STATUSES, Due
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.unit import Unit
from dues_engine.services import atomic
from dues_engine.services.audit_service import AuditService
from dues_engine.services.due_ledger import months_between
from dues_engine.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STAGE_STANDARD = 1
STAGE_WARNING = 2
STAGE_LETTER = 3
STAGE_LEGAL = 4

STAGE_NAMES = {
    STAGE_STANDARD: "Standard",
    STAGE_WARNING: "Warning",
    STAGE_LETTER: "Letter Sent",
    STAGE_LEGAL: "Legal Action",
}

# (minimum months overdue, stage), highest first
STAGE_THRESHOLDS = ((9, STAGE_LEGAL), (6, STAGE_LETTER), (3, STAGE_WARNING))


def stage_for_months(months_overdue: int) -> int:
    """Map months overdue to a workflow stage."""
    for minimum, stage in STAGE_THRESHOLDS:
        if months_overdue >= minimum:
            return stage
    return STAGE_STANDARD


@dataclass
class UnitDebt:
    """Unpaid-due snapshot of one unit."""

    total_debt_amount: Decimal
    oldest_unpaid_date: date
    fiscal_period_id: int


class DebtWorkflowService:
    """Service recomputing and managing debt workflows of a site's units."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def get_active_workflow(self, unit_id: int) -> DebtWorkflow | None:
        return (
            self.db.query(DebtWorkflow)
            .filter(DebtWorkflow.unit_id == unit_id, DebtWorkflow.is_active.is_(True))
            .order_by(DebtWorkflow.id.desc())
            .first()
        )

    def unit_debt(self, unit_id: int) -> UnitDebt | None:
        """Debt of a unit from unpaid dues in non-closed periods.

        Returns:
            UnitDebt, or None when nothing is owed
        """
        dues = (
            self.db.query(Due)
            .join(FiscalPeriod, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(
                Due.unit_id == unit_id,
                Due.status.in_(UNPAID_STATUSES),
                FiscalPeriod.status != PeriodStatus.CLOSED,
            )
            .order_by(Due.due_date.asc(), Due.id.asc())
            .all()
        )
        total = sum((due.total_amount - due.paid_amount for due in dues), Decimal("0.00"))
        if not dues or total <= 0:
            return None
        return UnitDebt(
            total_debt_amount=total,
            oldest_unpaid_date=dues[0].due_date,
            fiscal_period_id=dues[0].fiscal_period_id,
        )

    def recompute_site(
        self, site_id: int, as_of: date | None = None, actor_id: int | None = None
    ) -> int:
        """Recompute every unit's workflow of a site.

        Args:
            site_id: Site to recompute
            as_of: Reference date for months overdue (default: today)
            actor_id: Actor for audit stamping

        Returns:
            Number of workflows created or escalated
        """
        as_of = as_of or date.today()
        units = self.db.query(Unit).filter(Unit.site_id == site_id).order_by(Unit.id).all()
        changed = 0
        with atomic(self.db):
            for unit in units:
                if self._recompute_unit(unit, as_of, actor_id):
                    changed += 1
        logger.info(
            "Recomputed debt workflows of site %s: %d created or escalated", site_id, changed
        )
        return changed

    def _recompute_unit(self, unit: Unit, as_of: date, actor_id: int | None) -> bool:
        now = datetime.now(timezone.utc)
        active = (
            self.db.query(DebtWorkflow)
            .filter(DebtWorkflow.unit_id == unit.id, DebtWorkflow.is_active.is_(True))
            .order_by(DebtWorkflow.id.desc())
            .all()
        )
        workflow = active[0] if active else None
        for duplicate in active[1:]:
            duplicate.is_active = False
            duplicate.resolved_at = now
            logger.warning("Deactivated duplicate workflow %s of unit %s", duplicate.id, unit.label)

        debt = self.unit_debt(unit.id)
        if debt is None:
            if workflow is not None:
                workflow.is_active = False
                workflow.resolved_at = now
                workflow.total_debt_amount = Decimal("0.00")
                AuditService.log(self.db, "debt_workflow", workflow.id, "deactivate", actor_id)
                logger.info("Unit %s paid off, workflow %s closed", unit.label, workflow.id)
            return False

        months = max(0, months_between(debt.oldest_unpaid_date, as_of))
        target_stage = stage_for_months(months)

        if workflow is None:
            workflow = DebtWorkflow(
                unit_id=unit.id,
                fiscal_period_id=debt.fiscal_period_id,
                stage=target_stage,
                stage_changed_at=now,
                is_active=True,
            )
            self._stamp_stages(workflow, target_stage, now)
            self._update_amounts(workflow, debt, months)
            self.db.add(workflow)
            self.db.flush()
            AuditService.log(
                self.db, "debt_workflow", workflow.id, "create", actor_id, {"stage": target_stage}
            )
            return True

        self._update_amounts(workflow, debt, months)
        if target_stage <= workflow.stage:
            return False

        previous = workflow.stage
        workflow.stage = target_stage
        workflow.stage_changed_at = now
        self._stamp_stages(workflow, target_stage, now)
        AuditService.log(
            self.db, "debt_workflow", workflow.id, "escalate", actor_id,
            {"from": previous, "to": target_stage},
        )
        logger.info("Unit %s escalated from stage %d to %d", unit.label, previous, target_stage)
        return True

    @staticmethod
    def _update_amounts(workflow: DebtWorkflow, debt: UnitDebt, months: int) -> None:
        workflow.total_debt_amount = debt.total_debt_amount
        workflow.oldest_unpaid_date = debt.oldest_unpaid_date
        workflow.months_overdue = months

    @staticmethod
    def _stamp_stages(workflow: DebtWorkflow, stage: int, now: datetime) -> None:
        # Each stamp is written once, on first entry into its stage
        if stage >= STAGE_WARNING and workflow.warning_sent_at is None:
            workflow.warning_sent_at = now
        if stage >= STAGE_LETTER and workflow.letter_generated_at is None:
            workflow.letter_generated_at = now
        if stage >= STAGE_LEGAL and workflow.legal_action_at is None:
            workflow.legal_action_at = now

    def resolve_workflow(
        self, unit_id: int, notes: str | None = None, actor_id: int | None = None
    ) -> DebtWorkflow:
        """Manually close a unit's active workflow.

        Raises:
            NotFoundError: If the unit has no active workflow
        """
        workflow = self.get_active_workflow(unit_id)
        if workflow is None:
            raise NotFoundError(f"Unit {unit_id} has no active debt workflow")
        with atomic(self.db):
            workflow.is_active = False
            workflow.resolved_at = datetime.now(timezone.utc)
            if notes:
                workflow.notes = notes
            AuditService.log(
                self.db, "debt_workflow", workflow.id, "resolve", actor_id,
                {"stage": workflow.stage},
            )
        logger.info("Workflow %s of unit %s resolved manually", workflow.id, unit_id)
        return workflow

    def set_legal_case_number(
        self, unit_id: int, case_number: str, actor_id: int | None = None
    ) -> DebtWorkflow:
        """Attach a court case number to a unit's active workflow.

        Raises:
            NotFoundError: If the unit has no active workflow
            ValidationError: If the case number is empty
        """
        if not case_number or not case_number.strip():
            raise ValidationError("case_number is required")
        workflow = self.get_active_workflow(unit_id)
        if workflow is None:
            raise NotFoundError(f"Unit {unit_id} has no active debt workflow")
        with atomic(self.db):
            workflow.legal_case_number = case_number.strip()
            AuditService.log(
                self.db, "debt_workflow", workflow.id, "set_case_number", actor_id,
                {"legal_case_number": workflow.legal_case_number},
            )
        return workflow


__all__ = [
    "DebtWorkflowService",
    "STAGE_NAMES",
    "UnitDebt",
    "stage_for_months",
]
