"""General ledger synchronizer.

Single writer for ledger entries: every entry is created, posted and removed
here, together with its account-balance and budget effects. Deleting a
payment-linked income entry reverses the payment's due allocations but never
deletes the payment itself; payment deletion calls in here, not the reverse.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from dues_engine.models.account import Account, AccountType
from dues_engine.models.due import Due
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.ledger_entry import EntryType, LedgerEntry
from dues_engine.models.payment import Payment
from dues_engine.models.site import Site
from dues_engine.models.unit import Unit
from dues_engine.services import atomic
from dues_engine.services.audit_service import AuditService
from dues_engine.services.budget_service import BudgetService
from dues_engine.services.currency import (
    ConversionRates,
    quantize_money,
    quantize_rate,
    to_reporting,
    validate_rate,
)
from dues_engine.services.due_ledger import DueLedgerService
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.unit_locks import get_unit_locks

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class AccountBalanceCheck:
    """Per-currency comparison of stored balances with the ledger."""

    currency_code: str
    initial_total: Decimal
    ledger_effect: Decimal
    current_total: Decimal

    @property
    def expected_total(self) -> Decimal:
        return self.initial_total + self.ledger_effect

    @property
    def is_balanced(self) -> bool:
        return self.expected_total == self.current_total


class LedgerSyncService:
    """Service keeping ledger entries, account balances and budget actuals in step."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.budget = BudgetService(db)
        self.dues = DueLedgerService(db)

    # ------------------------------------------------------------------ lookups

    def get_entry(self, entry_id: int) -> LedgerEntry:
        entry = self.db.query(LedgerEntry).filter(LedgerEntry.id == entry_id).first()
        if entry is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    def get_payment_entry(self, payment_id: int) -> LedgerEntry | None:
        return self.db.query(LedgerEntry).filter(LedgerEntry.payment_id == payment_id).first()

    def _get_site(self, site_id: int) -> Site:
        site = self.db.query(Site).filter(Site.id == site_id).first()
        if site is None:
            raise NotFoundError(f"Site {site_id} not found")
        return site

    def _get_account(self, account_id: int, site_id: int) -> Account:
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        if account.site_id != site_id:
            raise ValidationError(f"Account {account.name!r} belongs to another site")
        if not account.is_active:
            raise ValidationError(f"Account {account.name!r} is inactive")
        return account

    def _resolve_period(self, site_id: int, entry_date: date, period_id: int | None) -> int | None:
        if period_id is not None:
            period = self.db.query(FiscalPeriod).filter(FiscalPeriod.id == period_id).first()
            if period is None:
                raise NotFoundError(f"Fiscal period {period_id} not found")
            if period.site_id != site_id:
                raise ValidationError(f"Fiscal period {period.name} belongs to another site")
        else:
            period = (
                self.db.query(FiscalPeriod)
                .filter(
                    FiscalPeriod.site_id == site_id,
                    FiscalPeriod.start_date <= entry_date,
                    FiscalPeriod.end_date > entry_date,
                )
                .order_by(FiscalPeriod.start_date.desc())
                .first()
            )
            if period is None:
                return None
        if period.status == PeriodStatus.CLOSED:
            raise ConsistencyError(f"Fiscal period {period.name} is closed")
        return period.id

    def open_account(
        self,
        site_id: int,
        name: str,
        currency_code: str,
        account_type: AccountType | str = AccountType.CASH,
        initial_balance: Decimal = ZERO,
        initial_exchange_rate: Decimal | None = None,
        actor_id: int | None = None,
    ) -> Account:
        """Create an account whose running balance starts at its initial balance.

        Raises:
            ValidationError: Unknown account type or non-positive initial rate
        """
        site = self._get_site(site_id)
        try:
            account_type = AccountType(account_type)
        except ValueError as e:
            raise ValidationError(f"Unknown account type: {account_type}") from e
        if initial_exchange_rate is None:
            if currency_code != site.reporting_currency:
                raise ValidationError(
                    f"initial_exchange_rate is required for a {currency_code} account"
                )
            initial_exchange_rate = Decimal("1")
        initial_exchange_rate = validate_rate(initial_exchange_rate, "initial_exchange_rate")
        initial_balance = quantize_money(initial_balance)

        with atomic(self.db):
            account = Account(
                site_id=site.id,
                name=name,
                account_type=account_type.value,
                currency_code=currency_code,
                initial_balance=initial_balance,
                initial_exchange_rate=initial_exchange_rate,
                current_balance=initial_balance,
                is_active=True,
            )
            self.db.add(account)
            self.db.flush()
            AuditService.log(
                self.db, "account", account.id, "create", actor_id,
                {"currency": currency_code, "initial_balance": str(initial_balance)},
            )
        return account

    # ----------------------------------------------------------------- posting

    def post_entry(self, entry: LedgerEntry) -> None:
        """Apply an entry's account and budget effects (primitive, no commit)."""
        self._apply_effects(entry, 1)

    def unpost_entry(self, entry: LedgerEntry) -> None:
        """Invert an entry's account and budget effects (primitive, no commit)."""
        self._apply_effects(entry, -1)

    def _apply_effects(self, entry: LedgerEntry, sign: int) -> None:
        if entry.entry_type == EntryType.TRANSFER.value:
            source = self.db.query(Account).filter(Account.id == entry.from_account_id).one()
            target = self.db.query(Account).filter(Account.id == entry.to_account_id).one()
            source.current_balance = source.current_balance - sign * entry.amount
            target.current_balance = target.current_balance + sign * entry.amount
            return

        if entry.account_id is not None:
            account = self.db.query(Account).filter(Account.id == entry.account_id).one()
            delta = entry.account_amount
            if entry.entry_type == EntryType.EXPENSE.value:
                delta = -delta
            account.current_balance = account.current_balance + sign * delta

        self.budget.apply_entry(entry, sign)

    # ---------------------------------------------------------------- creation

    def create_entry(
        self,
        site_id: int,
        entry_type: EntryType | str,
        amount: Decimal,
        currency_code: str,
        exchange_rate: Decimal,
        entry_date: date,
        category: str | None = None,
        account_id: int | None = None,
        account_rate: Decimal | None = None,
        fiscal_period_id: int | None = None,
        description: str | None = None,
        vendor_name: str | None = None,
        actor_id: int | None = None,
    ) -> LedgerEntry:
        """Record an income or expense entry and post its effects.

        Args:
            site_id: Site the entry belongs to
            entry_type: 'income' or 'expense' (transfers use create_transfer)
            amount: Positive amount in currency_code
            currency_code: Entry currency
            exchange_rate: 1 entry currency = exchange_rate reporting currency
            entry_date: Booking date
            category: Budget/income category
            account_id: Account the money moves through (optional)
            account_rate: 1 entry currency = account_rate account currency, when
                the account is in neither the entry nor the reporting currency
            fiscal_period_id: Period to book into (default: period containing entry_date)
            description: Free text
            vendor_name: Counterparty for expenses
            actor_id: Actor for created_by and audit stamping

        Returns:
            Created LedgerEntry

        Raises:
            ValidationError: Bad type, amount or rate, or account of another site
            NotFoundError: Missing site, account or period
            ConsistencyError: Booking into a closed period
        """
        try:
            entry_type = EntryType(entry_type)
        except ValueError as e:
            raise ValidationError(f"Unknown entry type: {entry_type}") from e
        if entry_type == EntryType.TRANSFER:
            raise ValidationError("Transfers between accounts must use create_transfer")
        amount = quantize_money(amount)
        if amount <= 0:
            logger.error("Rejected %s entry with non-positive amount %s", entry_type.value, amount)
            raise ValidationError(f"Entry amount must be positive, got {amount}")
        exchange_rate = validate_rate(exchange_rate)

        site = self._get_site(site_id)
        account = self._get_account(account_id, site.id) if account_id is not None else None
        period_id = self._resolve_period(site.id, entry_date, fiscal_period_id)

        amount_reporting = to_reporting(amount, exchange_rate)
        account_amount = None
        if account is not None:
            account_amount = self._amount_in_account_currency(
                account, site, amount, currency_code, amount_reporting, account_rate
            )

        with atomic(self.db):
            entry = LedgerEntry(
                site_id=site.id,
                fiscal_period_id=period_id,
                entry_type=entry_type.value,
                category=category,
                description=description,
                amount=amount,
                currency_code=currency_code,
                exchange_rate=exchange_rate,
                amount_reporting=amount_reporting,
                entry_date=entry_date,
                account_id=account.id if account is not None else None,
                account_amount=account_amount,
                vendor_name=vendor_name,
                created_by=actor_id,
            )
            self.db.add(entry)
            self.db.flush()
            self.post_entry(entry)
            AuditService.log(
                self.db, "ledger_entry", entry.id, "create", actor_id,
                {"type": entry.entry_type, "amount": str(amount), "currency": currency_code},
            )

        logger.info(
            "Recorded %s entry %s: %s %s (%s reporting)",
            entry.entry_type, entry.id, amount, currency_code, amount_reporting,
        )
        return entry

    @staticmethod
    def _amount_in_account_currency(
        account: Account,
        site: Site,
        amount: Decimal,
        currency_code: str,
        amount_reporting: Decimal,
        account_rate: Decimal | None,
    ) -> Decimal:
        if account.currency_code == currency_code:
            return amount
        if account.currency_code == site.reporting_currency:
            return amount_reporting
        if account_rate is not None:
            return quantize_money(amount * validate_rate(account_rate, "account_rate"))
        raise ValidationError(
            f"account_rate is required to book {currency_code} into "
            f"{account.currency_code} account {account.name!r}"
        )

    def create_transfer(
        self,
        site_id: int,
        from_account_id: int,
        to_account_id: int,
        amount: Decimal,
        transfer_date: date,
        exchange_rate: Decimal | None = None,
        description: str | None = None,
        actor_id: int | None = None,
    ) -> LedgerEntry:
        """Move money between two accounts of the same currency.

        Transfers carry no category and never affect budgets.

        Args:
            exchange_rate: Account currency to reporting currency; may be
                omitted when the accounts hold the reporting currency

        Raises:
            ValidationError: Same account, currency mismatch, bad amount or rate
        """
        if from_account_id == to_account_id:
            raise ValidationError("Transfer source and target accounts must differ")
        amount = quantize_money(amount)
        if amount <= 0:
            raise ValidationError(f"Transfer amount must be positive, got {amount}")

        site = self._get_site(site_id)
        source = self._get_account(from_account_id, site.id)
        target = self._get_account(to_account_id, site.id)
        if source.currency_code != target.currency_code:
            raise ValidationError(
                f"Cannot transfer between {source.currency_code} and "
                f"{target.currency_code} accounts"
            )
        if exchange_rate is None:
            if source.currency_code != site.reporting_currency:
                raise ValidationError(
                    f"exchange_rate is required for {source.currency_code} transfers"
                )
            exchange_rate = Decimal("1")
        exchange_rate = validate_rate(exchange_rate)
        period_id = self._resolve_period(site.id, transfer_date, None)

        with atomic(self.db):
            entry = LedgerEntry(
                site_id=site.id,
                fiscal_period_id=period_id,
                entry_type=EntryType.TRANSFER.value,
                category=None,
                description=description,
                amount=amount,
                currency_code=source.currency_code,
                exchange_rate=exchange_rate,
                amount_reporting=to_reporting(amount, exchange_rate),
                entry_date=transfer_date,
                from_account_id=source.id,
                to_account_id=target.id,
                created_by=actor_id,
            )
            self.db.add(entry)
            self.db.flush()
            self.post_entry(entry)
            AuditService.log(
                self.db, "ledger_entry", entry.id, "transfer", actor_id,
                {"from": source.id, "to": target.id, "amount": str(amount)},
            )

        logger.info(
            "Transferred %s %s from %r to %r",
            amount, source.currency_code, source.name, target.name,
        )
        return entry

    def record_payment_income(
        self,
        payment: Payment,
        account: Account,
        rates: ConversionRates,
        account_rate: Decimal | None = None,
        actor_id: int | None = None,
    ) -> LedgerEntry:
        """Create and post the one income entry paired with a payment (primitive, no commit).

        The entry is booked in the receiving account's currency; its reporting
        amount is the payment's own, so account conversion never drifts it.

        Raises:
            ConsistencyError: If the payment already has a ledger entry
        """
        if payment.id is None:
            self.db.flush()
        if self.get_payment_entry(payment.id) is not None:
            raise ConsistencyError(f"Payment {payment.id} already has a ledger entry")

        rate_to_account = rates.rate_to(account.currency_code, account_rate)
        entry_amount = quantize_money(payment.amount * rate_to_account)
        entry_rate = quantize_rate(rates.payment_to_reporting / rate_to_account)

        unit = self.db.query(Unit).filter(Unit.id == payment.unit_id).one()
        first_due_id = None
        if payment.applied_to_dues:
            first_due_id = payment.applied_to_dues[0].get("due_id")

        entry = LedgerEntry(
            site_id=unit.site_id,
            fiscal_period_id=payment.fiscal_period_id,
            entry_type=EntryType.INCOME.value,
            category=payment.category,
            description=f"Unit {unit.label} - {payment.category}",
            amount=entry_amount,
            currency_code=account.currency_code,
            exchange_rate=entry_rate,
            amount_reporting=payment.amount_reporting,
            entry_date=payment.payment_date,
            account_id=account.id,
            account_amount=entry_amount,
            payment_id=payment.id,
            due_id=first_due_id,
            created_by=actor_id,
        )
        self.db.add(entry)
        self.db.flush()
        self.post_entry(entry)
        return entry

    # ---------------------------------------------------------------- deletion

    def delete_entry(self, entry_id: int, actor_id: int | None = None) -> None:
        """Delete a ledger entry and undo everything its creation did.

        For a payment-linked income entry the payment's recorded allocations
        are released from their dues and the payment is marked reversed. The
        payment row itself stays.
        """
        entry = self.get_entry(entry_id)
        unit_ids = []
        if entry.payment_id is not None:
            unit_ids = [
                unit_id
                for (unit_id,) in self.db.query(Payment.unit_id).filter(
                    Payment.id == entry.payment_id
                )
            ]

        with get_unit_locks().hold_many(unit_ids), atomic(self.db):
            self.remove_entry(entry, actor_id)

        logger.info("Deleted ledger entry %s", entry_id)

    def _guard_open_periods(self, entry: LedgerEntry, payment: Payment | None) -> None:
        """Refuse to remove an entry whose effects live in a closed period."""
        if entry.fiscal_period_id is not None:
            period = (
                self.db.query(FiscalPeriod)
                .filter(FiscalPeriod.id == entry.fiscal_period_id)
                .first()
            )
            if period is not None and period.status == PeriodStatus.CLOSED:
                raise ConsistencyError(
                    f"Ledger entry {entry.id} belongs to closed fiscal period {period.name}"
                )

        if payment is None or payment.reversed_at is not None:
            return
        due_ids = {r.get("due_id") for r in payment.applied_to_dues or []} - {None}
        if not due_ids:
            return
        closed = (
            self.db.query(FiscalPeriod)
            .join(Due, Due.fiscal_period_id == FiscalPeriod.id)
            .filter(Due.id.in_(due_ids), FiscalPeriod.status == PeriodStatus.CLOSED)
            .first()
        )
        if closed is not None:
            raise ConsistencyError(
                f"Payment {payment.id} is allocated to dues of closed fiscal period {closed.name}"
            )

    def remove_entry(self, entry: LedgerEntry, actor_id: int | None = None) -> None:
        """Unpost, reverse and delete an entry (primitive, no commit).

        Raises:
            ConsistencyError: If the entry or the dues its payment paid belong
                to a closed fiscal period
        """
        payment = None
        if entry.payment_id is not None:
            payment = self.db.query(Payment).filter(Payment.id == entry.payment_id).first()
        self._guard_open_periods(entry, payment)

        self.unpost_entry(entry)

        if payment is not None and payment.reversed_at is None:
            self.dues.release_allocations(payment.applied_to_dues or [])
            payment.reversed_at = datetime.now(timezone.utc)
            AuditService.log(
                self.db, "payment", payment.id, "reverse", actor_id,
                {"ledger_entry_id": entry.id},
            )

        AuditService.log(
            self.db, "ledger_entry", entry.id, "delete", actor_id,
            {"type": entry.entry_type, "amount": str(entry.amount)},
        )
        self.db.delete(entry)
        self.db.flush()

    # ------------------------------------------------------------ verification

    def verify_account_balances(self, site_id: int) -> list[AccountBalanceCheck]:
        """Compare stored account balances with initial balances plus ledger effects.

        Returns:
            One check per currency held by the site's accounts
        """
        accounts = self.db.query(Account).filter(Account.site_id == site_id).all()
        currency_of = {account.id: account.currency_code for account in accounts}
        checks: dict[str, AccountBalanceCheck] = {}
        for account in accounts:
            check = checks.setdefault(
                account.currency_code,
                AccountBalanceCheck(account.currency_code, ZERO, ZERO, ZERO),
            )
            check.initial_total += account.initial_balance
            check.current_total += account.current_balance

        entries = self.db.query(LedgerEntry).filter(LedgerEntry.site_id == site_id).all()
        for entry in entries:
            if entry.entry_type == EntryType.TRANSFER.value:
                checks[currency_of[entry.from_account_id]].ledger_effect -= entry.amount
                checks[currency_of[entry.to_account_id]].ledger_effect += entry.amount
            elif entry.account_id is not None:
                delta = entry.account_amount
                if entry.entry_type == EntryType.EXPENSE.value:
                    delta = -delta
                checks[currency_of[entry.account_id]].ledger_effect += delta

        for check in checks.values():
            if not check.is_balanced:
                logger.error(
                    "Account balances in %s drifted: expected %s, stored %s",
                    check.currency_code, check.expected_total, check.current_total,
                )
        return sorted(checks.values(), key=lambda check: check.currency_code)


__all__ = ["AccountBalanceCheck", "LedgerSyncService"]
