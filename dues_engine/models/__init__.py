"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from dues_engine.models.account import Account, AccountType  # noqa: E402
from dues_engine.models.audit_log import AuditLog  # noqa: E402
from dues_engine.models.balance_transfer import BalanceTransfer, TransferType  # noqa: E402
from dues_engine.models.budget_category import BudgetCategory  # noqa: E402
from dues_engine.models.debt_workflow import DebtWorkflow  # noqa: E402
from dues_engine.models.due import UNPAID_STATUSES, Due, DueStatus  # noqa: E402
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus  # noqa: E402
from dues_engine.models.ledger_entry import EntryType, LedgerEntry  # noqa: E402
from dues_engine.models.payment import Payment, PaymentMethod  # noqa: E402
from dues_engine.models.site import DistributionMethod, Site  # noqa: E402
from dues_engine.models.unit import Unit  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "Site",
    "DistributionMethod",
    "Unit",
    "FiscalPeriod",
    "PeriodStatus",
    "Due",
    "DueStatus",
    "UNPAID_STATUSES",
    "Payment",
    "PaymentMethod",
    "LedgerEntry",
    "EntryType",
    "Account",
    "AccountType",
    "BudgetCategory",
    "DebtWorkflow",
    "BalanceTransfer",
    "TransferType",
    "AuditLog",
]
