"""Tests for the ledger synchronizer: entries, transfers, accounts and reversal."""

from datetime import date
from decimal import Decimal

import pytest

from dues_engine.models import Account, AuditLog, DueStatus, LedgerEntry, Payment
from dues_engine.services.budget_service import BudgetService
from dues_engine.services.due_ledger import DueLedgerService
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.ledger_sync import LedgerSyncService
from dues_engine.services.payment_allocator import PaymentAllocatorService
from dues_engine.services.period_service import FiscalPeriodService

NEXT_YEAR = date.today().year + 1
TRANSFER_DAY = date(NEXT_YEAR, 1, 5)


@pytest.fixture
def ledger(db_session):
    """Create ledger synchronizer instance."""
    return LedgerSyncService(db_session)


def expense(ledger, site, account, amount, category="Cleaning", **overrides):
    kwargs = {
        "site_id": site.id,
        "entry_type": "expense",
        "amount": Decimal(amount),
        "currency_code": "TRY",
        "exchange_rate": Decimal("1"),
        "entry_date": date(NEXT_YEAR, 1, 20),
        "category": category,
        "account_id": account.id,
        "vendor_name": "CleanCo",
    }
    kwargs.update(overrides)
    return ledger.create_entry(**kwargs)


class TestOpenAccount:
    """Test account creation."""

    def test_initial_balance_is_current_balance(self, ledger, site):
        """Test a new account starts at its initial balance."""
        account = ledger.open_account(site.id, "Bank", "TRY", "bank", Decimal("5000"))

        assert account.current_balance == Decimal("5000.00")
        assert account.initial_exchange_rate == Decimal("1")

    def test_foreign_account_needs_rate(self, ledger, site):
        """Test a EUR account needs its initial exchange rate."""
        with pytest.raises(ValidationError, match="initial_exchange_rate is required"):
            ledger.open_account(site.id, "Euro Box", "EUR")

    def test_unknown_account_type(self, ledger, site):
        """Test unsupported account type."""
        with pytest.raises(ValidationError, match="Unknown account type"):
            ledger.open_account(site.id, "Safe", "TRY", "crypto")


class TestCreateEntry:
    """Test income and expense entries."""

    def test_expense_reduces_account(self, db_session, ledger, site, period, account):
        """Test an expense lowers the account balance and lands in the period."""
        entry = expense(ledger, site, account, "300.00")

        db_session.refresh(account)
        assert account.current_balance == Decimal("-300.00")
        assert entry.fiscal_period_id == period.id
        assert entry.amount_reporting == Decimal("300.00")

    def test_income_increases_account(self, db_session, ledger, site, period, account):
        """Test a manual income entry raises the account balance."""
        expense(ledger, site, account, "200.00", entry_type="income", category="Parking")

        db_session.refresh(account)
        assert account.current_balance == Decimal("200.00")

    def test_foreign_entry_into_reporting_account(self, db_session, ledger, site, period, account):
        """Test a EUR expense paid from the TRY account moves the reporting amount."""
        entry = expense(
            ledger, site, account, "10.00", currency_code="EUR", exchange_rate=Decimal("52")
        )

        assert entry.amount_reporting == Decimal("520.00")
        assert entry.account_amount == Decimal("520.00")

    def test_third_currency_account_needs_rate(self, ledger, site, period):
        """Test USD expense from a EUR account needs account_rate."""
        euro = ledger.open_account(site.id, "Euro Box", "EUR", initial_exchange_rate=Decimal("52"))

        with pytest.raises(ValidationError, match="account_rate is required"):
            expense(
                ledger, site, euro, "10.00", currency_code="USD", exchange_rate=Decimal("40")
            )

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_non_positive_amount(self, ledger, site, period, account, amount):
        """Test zero and negative amounts."""
        with pytest.raises(ValidationError, match="must be positive"):
            expense(ledger, site, account, amount)

    def test_transfer_type_rejected(self, ledger, site, period, account):
        """Test transfers must use create_transfer."""
        with pytest.raises(ValidationError, match="create_transfer"):
            expense(ledger, site, account, "10", entry_type="transfer")

    def test_closed_period_rejected(self, db_session, ledger, site, period, make_period, account):
        """Test booking into a closed period."""
        next_period = make_period("Next", date(NEXT_YEAR, 3, 1), date(NEXT_YEAR + 1, 3, 1))
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        with pytest.raises(ConsistencyError, match="is closed"):
            expense(ledger, site, account, "10")


class TestTransfers:
    """Test account-to-account transfers."""

    def test_transfer_moves_money(self, db_session, ledger, site, period, account):
        """Test a transfer debits one account and credits the other."""
        bank = ledger.open_account(site.id, "Bank", "TRY", "bank")

        entry = ledger.create_transfer(site.id, account.id, bank.id, Decimal("150"), TRANSFER_DAY)

        db_session.refresh(account)
        db_session.refresh(bank)
        assert entry.category is None
        assert account.current_balance == Decimal("-150.00")
        assert bank.current_balance == Decimal("150.00")

    def test_transfer_currency_mismatch(self, ledger, site, period, account):
        """Test accounts of different currencies cannot transfer."""
        euro = ledger.open_account(site.id, "Euro Box", "EUR", initial_exchange_rate=Decimal("52"))

        with pytest.raises(ValidationError, match="Cannot transfer"):
            ledger.create_transfer(site.id, account.id, euro.id, Decimal("1"), TRANSFER_DAY)

    def test_transfer_same_account(self, ledger, site, account):
        """Test source and target must differ."""
        with pytest.raises(ValidationError, match="must differ"):
            ledger.create_transfer(site.id, account.id, account.id, Decimal("1"), TRANSFER_DAY)

    def test_delete_transfer_restores_balances(self, db_session, ledger, site, period, account):
        """Test deleting a transfer undoes both sides."""
        bank = ledger.open_account(site.id, "Bank", "TRY", "bank")
        entry = ledger.create_transfer(site.id, account.id, bank.id, Decimal("150"), TRANSFER_DAY)

        ledger.delete_entry(entry.id)

        db_session.refresh(account)
        db_session.refresh(bank)
        assert account.current_balance == Decimal("0.00")
        assert bank.current_balance == Decimal("0.00")


class TestPaymentEntryDeletion:
    """Test deleting the income entry of a payment."""

    def test_delete_entry_reverses_payment(self, db_session, ledger, period, unit, account):
        """Test the payment stays, reversed, and its dues are released."""
        result = PaymentAllocatorService(db_session).apply_payment(
            unit_id=unit.id,
            amount=Decimal("1500.00"),
            payment_date=date(NEXT_YEAR, 1, 10),
            method="cash",
            reference_no=None,
            account_id=account.id,
            category=None,
            currency_code="TRY",
            exchange_rate=Decimal("1"),
        )

        ledger.delete_entry(result.ledger_entry_id)

        payment = db_session.query(Payment).one()
        assert payment.reversed_at is not None
        assert payment.is_reversed
        assert db_session.query(LedgerEntry).count() == 0
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert [due.paid_amount for due in dues] == [Decimal("0.00"), Decimal("0.00")]
        assert all(due.status == DueStatus.PENDING.value for due in dues)
        actions = {row.action for row in db_session.query(AuditLog).all()}
        assert {"reverse", "delete"} <= actions

    def test_delete_missing_entry(self, ledger):
        """Test unknown entry."""
        with pytest.raises(NotFoundError):
            ledger.delete_entry(999)


class TestClosedPeriodDeletion:
    """Test entries of a closed period cannot be removed."""

    @pytest.fixture
    def next_period(self, make_period):
        return make_period("Next", date(NEXT_YEAR, 3, 1), date(NEXT_YEAR + 1, 3, 1))

    def pay(self, db_session, unit, account, amount, payment_date):
        return PaymentAllocatorService(db_session).apply_payment(
            unit_id=unit.id,
            amount=Decimal(amount),
            payment_date=payment_date,
            method="cash",
            reference_no=None,
            account_id=account.id,
            category=None,
            currency_code="TRY",
            exchange_rate=Decimal("1"),
        )

    def test_payment_entry_kept(self, db_session, ledger, period, next_period, unit, account):
        """Test the payment stays applied and the account untouched."""
        result = self.pay(db_session, unit, account, "1500.00", date(NEXT_YEAR, 1, 10))
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        with pytest.raises(ConsistencyError, match="closed fiscal period"):
            ledger.delete_entry(result.ledger_entry_id)

        payment = db_session.query(Payment).one()
        assert payment.reversed_at is None
        assert db_session.query(LedgerEntry).count() == 1
        db_session.refresh(account)
        assert account.current_balance == Decimal("1500.00")
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert [due.paid_amount for due in dues] == [Decimal("1000.00"), Decimal("500.00")]

    def test_open_entry_paying_closed_dues(
        self, db_session, ledger, period, next_period, unit, account
    ):
        """Test a March payment that settled January dues is frozen by the close."""
        result = self.pay(db_session, unit, account, "1000.00", date(NEXT_YEAR, 3, 10))
        entry = db_session.query(LedgerEntry).one()
        assert entry.fiscal_period_id == next_period.id
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        with pytest.raises(ConsistencyError, match="closed fiscal period"):
            ledger.delete_entry(result.ledger_entry_id)

        assert db_session.query(Payment).one().reversed_at is None
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert dues[0].paid_amount == Decimal("1000.00")

    def test_expense_keeps_budget_actual(
        self, db_session, ledger, site, period, next_period, account
    ):
        """Test a closed period's expense and its budget actual stay in place."""
        budget = BudgetService(db_session)
        budget.set_planned_amount(period.id, "Cleaning", Decimal("12000"))
        entry = expense(ledger, site, account, "300.00")
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        with pytest.raises(ConsistencyError, match="closed fiscal period"):
            ledger.delete_entry(entry.id)

        assert budget.get_category(period.id, "Cleaning").actual_amount == Decimal("300.00")
        db_session.refresh(account)
        assert account.current_balance == Decimal("-300.00")


class TestVerifyAccountBalances:
    """Test the per-currency account balance check."""

    def test_balanced_after_activity(self, db_session, ledger, site, period, account):
        """Test stored balances match initial plus ledger effects."""
        bank = ledger.open_account(site.id, "Bank", "TRY", "bank", Decimal("1000"))
        expense(ledger, site, account, "300.00")
        ledger.create_transfer(site.id, bank.id, account.id, Decimal("500"), TRANSFER_DAY)

        checks = ledger.verify_account_balances(site.id)

        assert [check.currency_code for check in checks] == ["TRY"]
        assert checks[0].initial_total == Decimal("1000.00")
        assert checks[0].ledger_effect == Decimal("-300.00")
        assert checks[0].is_balanced

    def test_detects_drift(self, db_session, ledger, site, period, account):
        """Test a balance written outside the synchronizer is flagged."""
        db_session.query(Account).filter(Account.id == account.id).update(
            {"current_balance": Decimal("42.00")}
        )
        db_session.commit()

        checks = ledger.verify_account_balances(site.id)

        assert not checks[0].is_balanced
