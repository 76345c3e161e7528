"""Budget category ORM model for planned vs actual expenses per period."""

from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class BudgetCategory(Base, BaseModel):
    """Planned and actual spending for one category in one fiscal period.

    actual_amount is a cache of the expense ledger: the sum of amount_reporting
    over expense entries of the same period and category name.
    """

    __tablename__ = "budget_categories"

    fiscal_period_id: Mapped[int] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=False,
        comment="FK to FiscalPeriod",
    )
    category_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Category name matched against LedgerEntry.category",
    )
    planned_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Planned spending in the reporting currency",
    )
    actual_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Cached sum of expense entries in the reporting currency",
    )
    display_order: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
    )

    # Relationships
    fiscal_period: Mapped["FiscalPeriod"] = relationship(  # noqa: F821
        "FiscalPeriod",
        back_populates="budget_categories",
    )

    __table_args__ = (
        UniqueConstraint("fiscal_period_id", "category_name", name="uq_budget_period_category"),
    )

    def __repr__(self) -> str:
        return (
            f"<BudgetCategory(id={self.id}, name={self.category_name!r}, "
            f"planned={self.planned_amount}, actual={self.actual_amount})>"
        )


__all__ = ["BudgetCategory"]
