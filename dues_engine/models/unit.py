"""Unit ORM model for billable properties within a site."""

from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class Unit(Base, BaseModel):
    """Model representing a billable unit (flat, shop, villa).

    Weights (coefficient or share_ratio) drive proportional budget distribution.
    opening_balance is signed: positive means debt carried in, negative means credit.
    """

    __tablename__ = "units"

    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id"),
        nullable=False,
        comment="FK to Site owning this unit",
    )
    unit_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Unit number within its block (e.g., '12')",
    )
    block: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Block or building letter (e.g., 'A')",
    )
    owner_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Owner or resident name",
    )
    coefficient: Mapped[Decimal] = mapped_column(
        Numeric(10, 4),
        nullable=False,
        default=Decimal("1.0"),
        comment="Unit type coefficient used by the coefficient distribution method",
    )
    share_ratio: Mapped[Decimal] = mapped_column(
        Numeric(10, 4),
        nullable=False,
        default=Decimal("1.0"),
        comment="Ownership share used by the share_ratio distribution method",
    )
    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Signed opening balance (positive = debt, negative = credit)",
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        comment="Inactive units receive no newly generated dues",
    )

    # Relationships
    site: Mapped["Site"] = relationship(  # noqa: F821
        "Site",
        back_populates="units",
    )
    dues: Mapped[list["Due"]] = relationship(  # noqa: F821
        "Due",
        back_populates="unit",
    )

    __table_args__ = (
        Index("idx_unit_site", "site_id"),
        Index("idx_unit_site_number", "site_id", "block", "unit_number", unique=True),
    )

    @property
    def label(self) -> str:
        """Human readable unit label, e.g. 'A-12'."""
        if self.block:
            return f"{self.block}-{self.unit_number}"
        return self.unit_number

    def __repr__(self) -> str:
        return f"<Unit(id={self.id}, label={self.label!r}, site_id={self.site_id})>"


__all__ = ["Unit"]
