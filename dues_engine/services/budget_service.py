"""Budget reconciler: planned vs actual spending per category and period.

actual_amount is maintained incrementally as expense entries are posted and
unposted, and can be rebuilt from the ledger at any time. Both paths go
through counts_toward_budget() so they agree on which entries matter.
"""

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from dues_engine.models.budget_category import BudgetCategory
from dues_engine.models.fiscal_period import FiscalPeriod
from dues_engine.models.ledger_entry import EntryType, LedgerEntry
from dues_engine.services import atomic
from dues_engine.services.currency import quantize_money
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def counts_toward_budget(entry: LedgerEntry) -> bool:
    """Only categorized expense entries booked in a period feed budget actuals."""
    return (
        entry.entry_type == EntryType.EXPENSE.value
        and bool(entry.category)
        and entry.fiscal_period_id is not None
    )


class BudgetService:
    """Service for budget category planning and actual-amount reconciliation."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def get_category(self, period_id: int, category_name: str) -> BudgetCategory | None:
        return (
            self.db.query(BudgetCategory)
            .filter(
                BudgetCategory.fiscal_period_id == period_id,
                BudgetCategory.category_name == category_name,
            )
            .first()
        )

    def get_categories(self, period_id: int) -> list[BudgetCategory]:
        return (
            self.db.query(BudgetCategory)
            .filter(BudgetCategory.fiscal_period_id == period_id)
            .order_by(BudgetCategory.display_order, BudgetCategory.category_name)
            .all()
        )

    def apply_entry(self, entry: LedgerEntry, sign: int) -> BudgetCategory | None:
        """Add (sign=1) or remove (sign=-1) an entry's effect on its category (no commit).

        Returns:
            The category that changed, or None if the entry has no budget effect
        """
        if not counts_toward_budget(entry):
            return None
        category = self.get_category(entry.fiscal_period_id, entry.category)
        if category is None:
            return None

        new_actual = category.actual_amount + sign * entry.amount_reporting
        if new_actual < 0:
            raise ConsistencyError(
                f"Budget actual for {category.category_name!r} would drop below zero; "
                "run recalculate_actuals"
            )
        category.actual_amount = quantize_money(new_actual)
        return category

    def compute_actuals(self, period_id: int) -> dict[str, Decimal]:
        """Sum expense amount_reporting per category of a period from the ledger.

        Returns:
            Dict of category_name -> actual for every budget category of the period
        """
        actuals = {category.category_name: ZERO for category in self.get_categories(period_id)}
        entries = (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.fiscal_period_id == period_id,
                LedgerEntry.entry_type == EntryType.EXPENSE.value,
            )
            .all()
        )
        for entry in entries:
            if counts_toward_budget(entry) and entry.category in actuals:
                actuals[entry.category] += entry.amount_reporting
        return {name: quantize_money(amount) for name, amount in actuals.items()}

    def recalculate_actuals(self, period_id: int) -> dict[str, Decimal]:
        """Rewrite every category's cached actual from the ledger (repair operation).

        Returns:
            Dict of category_name -> recomputed actual
        """
        actuals = self.compute_actuals(period_id)
        repaired = 0
        with atomic(self.db):
            for category in self.get_categories(period_id):
                if category.actual_amount != actuals[category.category_name]:
                    logger.warning(
                        "Budget cache drift in %r: %s cached, %s in ledger",
                        category.category_name,
                        category.actual_amount,
                        actuals[category.category_name],
                    )
                    repaired += 1
                category.actual_amount = actuals[category.category_name]
        logger.info("Recalculated budget actuals for period %s (%d repaired)", period_id, repaired)
        return actuals

    def set_planned_amount(
        self,
        period_id: int,
        category_name: str,
        planned_amount: Decimal,
        display_order: int | None = None,
    ) -> BudgetCategory:
        """Create or update a category's planned amount.

        A new category starts with its actual computed from existing expense
        entries, so it matches what recalculate_actuals would produce.

        Raises:
            NotFoundError: If the period does not exist
            ValidationError: If the name is empty or the amount negative
        """
        if not category_name or not category_name.strip():
            raise ValidationError("category_name is required")
        planned_amount = quantize_money(planned_amount)
        if planned_amount < 0:
            raise ValidationError(f"planned_amount must not be negative, got {planned_amount}")
        period = self.db.query(FiscalPeriod).filter(FiscalPeriod.id == period_id).first()
        if period is None:
            raise NotFoundError(f"Fiscal period {period_id} not found")

        with atomic(self.db):
            category = self.get_category(period_id, category_name)
            if category is None:
                category = BudgetCategory(
                    fiscal_period_id=period_id,
                    category_name=category_name,
                    planned_amount=planned_amount,
                    actual_amount=ZERO,
                    display_order=display_order or 0,
                )
                self.db.add(category)
                self.db.flush()
                category.actual_amount = self.compute_actuals(period_id)[category_name]
            else:
                category.planned_amount = planned_amount
                if display_order is not None:
                    category.display_order = display_order
        return category


__all__ = ["BudgetService", "counts_toward_budget"]
