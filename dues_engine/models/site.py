"""Site ORM model holding per-site billing configuration."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class DistributionMethod(str, Enum):
    """How the yearly budget is split across units."""

    COEFFICIENT = "coefficient"
    """Weight each unit by its coefficient."""

    SHARE_RATIO = "share_ratio"
    """Weight each unit by its share ratio."""


class Site(Base, BaseModel):
    """Model representing a managed site (building or complex).

    Owns units, fiscal periods and accounts. Carries the persisted
    configuration used when generating dues and applying penalties.
    """

    __tablename__ = "sites"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Site display name",
    )
    reporting_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="TRY",
        comment="Canonical currency for aggregated reporting (ISO 4217)",
    )
    distribution_method: Mapped[DistributionMethod] = mapped_column(
        String(20),
        nullable=False,
        default=DistributionMethod.COEFFICIENT,
        comment="Budget distribution: 'coefficient' or 'share_ratio'",
    )
    penalty_months_threshold: Mapped[int] = mapped_column(
        nullable=False,
        default=3,
        comment="Months overdue before a late penalty is charged",
    )
    penalty_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("5.00"),
        comment="Late penalty as a percentage of the base amount",
    )

    # Relationships
    units: Mapped[list["Unit"]] = relationship(  # noqa: F821
        "Unit",
        back_populates="site",
        order_by="Unit.id",
    )
    periods: Mapped[list["FiscalPeriod"]] = relationship(  # noqa: F821
        "FiscalPeriod",
        back_populates="site",
        order_by="FiscalPeriod.start_date",
    )
    accounts: Mapped[list["Account"]] = relationship(  # noqa: F821
        "Account",
        back_populates="site",
    )

    def __repr__(self) -> str:
        return f"<Site(id={self.id}, name={self.name!r}, currency={self.reporting_currency})>"


__all__ = ["Site", "DistributionMethod"]
