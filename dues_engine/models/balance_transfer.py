"""Balance transfer ORM model recorded when a fiscal period closes."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dues_engine.models import Base, BaseModel


class TransferType(str, Enum):
    """Kind of state carried across a period boundary."""

    DEBT = "debt"
    CREDIT = "credit"
    LEGAL_FLAG = "legal_flag"


class BalanceTransfer(Base, BaseModel):
    """Audit record linking a closing period to the period that follows it."""

    __tablename__ = "balance_transfers"

    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False)
    from_fiscal_period_id: Mapped[int] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=False,
        comment="Closing period",
    )
    to_fiscal_period_id: Mapped[int] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=False,
        comment="Opening period",
    )
    transfer_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="debt, credit or legal_flag",
    )
    amount: Mapped[Decimal | None] = mapped_column(
        Numeric(15, 2),
        nullable=True,
        comment="Absolute balance carried (empty for legal_flag)",
    )
    currency_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    legal_stage: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Workflow stage carried by a legal_flag transfer",
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_transfer_unit", "unit_id"),
        Index("idx_transfer_periods", "from_fiscal_period_id", "to_fiscal_period_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<BalanceTransfer(id={self.id}, unit_id={self.unit_id}, "
            f"type={self.transfer_type}, amount={self.amount})>"
        )


__all__ = ["BalanceTransfer", "TransferType"]
