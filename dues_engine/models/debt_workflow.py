"""Debt workflow ORM model tracking a unit's collection stage."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dues_engine.models import Base, BaseModel


class DebtWorkflow(Base, BaseModel):
    """Collection state of a unit with unpaid dues.

    Stages: 1 standard, 2 warning, 3 letter sent, 4 legal action.
    At most one active workflow exists per unit; superseded ones are deactivated.
    """

    __tablename__ = "debt_workflows"

    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        comment="FK to Unit in collection",
    )
    fiscal_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=True,
        comment="Period the workflow currently belongs to (moved on rollover)",
    )
    stage: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
        comment="Escalation stage 1-4",
    )
    total_debt_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
    )
    oldest_unpaid_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    months_overdue: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
    )
    stage_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    warning_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    letter_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    legal_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    legal_case_number: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_workflow_unit_active", "unit_id", "is_active"),
        Index("idx_workflow_stage", "stage"),
    )

    def __repr__(self) -> str:
        return (
            f"<DebtWorkflow(id={self.id}, unit_id={self.unit_id}, stage={self.stage}, "
            f"active={self.is_active})>"
        )


__all__ = ["DebtWorkflow"]
