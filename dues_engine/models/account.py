"""Account ORM model for cash and bank holdings."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class AccountType(str, Enum):
    """Account classification."""

    CASH = "cash"
    """Physical cash box kept by the site management."""

    BANK = "bank"
    """Bank account of the site."""


class Account(Base, BaseModel):
    """Model representing a money holding of a site.

    current_balance is kept in the account's own currency and is only changed
    by posting or unposting ledger entries.
    """

    __tablename__ = "accounts"

    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id"),
        nullable=False,
        comment="FK to Site owning the account",
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Account name (e.g., 'Main Cash', 'EUR Bank')",
    )
    account_type: Mapped[AccountType] = mapped_column(
        String(20),
        nullable=False,
        default=AccountType.CASH,
        comment="Account type: 'cash' or 'bank'",
    )
    currency_code: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Currency the balance is held in",
    )
    initial_balance: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Balance when the account was opened",
    )
    initial_exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(15, 6),
        nullable=False,
        default=Decimal("1"),
        comment="Rate to the reporting currency for the initial balance",
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Running balance in the account currency",
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
    )

    # Relationships
    site: Mapped["Site"] = relationship(  # noqa: F821
        "Site",
        back_populates="accounts",
    )

    __table_args__ = (
        Index("idx_account_site", "site_id"),
        Index("idx_account_site_name", "site_id", "name", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, name={self.name!r}, type={self.account_type}, "
            f"balance={self.current_balance} {self.currency_code})>"
        )


__all__ = ["Account", "AccountType"]
