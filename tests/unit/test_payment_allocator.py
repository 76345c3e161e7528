"""Tests for payment application, deletion and replay."""

from datetime import date
from decimal import Decimal

import pytest

from dues_engine.models import Account, AuditLog, Due, DueStatus, LedgerEntry, Payment, Site, Unit
from dues_engine.services.due_ledger import DueLedgerService
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.ledger_sync import LedgerSyncService
from dues_engine.services.payment_allocator import PaymentAllocatorService
from dues_engine.services.period_service import FiscalPeriodService

NEXT_YEAR = date.today().year + 1


@pytest.fixture
def allocator(db_session):
    """Create payment allocator instance."""
    return PaymentAllocatorService(db_session)


def apply(allocator, unit, account, amount, **overrides):
    kwargs = {
        "unit_id": unit.id,
        "amount": Decimal(amount),
        "payment_date": date(NEXT_YEAR, 1, 10),
        "method": "bank_transfer",
        "reference_no": "REF-1",
        "account_id": account.id,
        "category": None,
        "currency_code": "TRY",
        "exchange_rate": Decimal("1"),
    }
    kwargs.update(overrides)
    return allocator.apply_payment(**kwargs)


class TestApplyPayment:
    """Test FIFO application of payments."""

    def test_partial_then_full(self, db_session, allocator, period, unit, account):
        """Test 1500 then 600 against two 1000 dues leaves 100 overpayment."""
        first = apply(allocator, unit, account, "1500.00")
        second = apply(allocator, unit, account, "600.00")

        assert [a.amount_applied for a in first.allocations] == [
            Decimal("1000.00"),
            Decimal("500.00"),
        ]
        assert first.overpayment == Decimal("0.00")
        assert [a.amount_applied for a in second.allocations] == [Decimal("500.00")]
        assert second.overpayment == Decimal("100.00")

        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert [due.status for due in dues] == [DueStatus.PAID.value, DueStatus.PAID.value]

    def test_payment_writes_one_ledger_entry(self, db_session, allocator, period, unit, account):
        """Test the paired income entry and account balance."""
        result = apply(allocator, unit, account, "1500.00")

        entry = db_session.query(LedgerEntry).one()
        assert entry.id == result.ledger_entry_id
        assert entry.payment_id == result.payment_id
        assert entry.entry_type == "income"
        assert entry.category == "Monthly Dues"
        assert entry.description == "Unit A-1 - Monthly Dues"
        assert entry.amount == Decimal("1500.00")
        db_session.refresh(account)
        assert account.current_balance == Decimal("1500.00")

    def test_foreign_currency_payment(self, db_session, allocator, period, unit, account):
        """Test 884 EUR at 52 settles 45,968 TRY."""
        result = apply(
            allocator, unit, account, "884.00", currency_code="EUR", exchange_rate=Decimal("52")
        )

        payment = db_session.query(Payment).one()
        assert result.amount_in_dues_currency == Decimal("45968.00")
        assert payment.dues_currency == "TRY"
        assert payment.amount_reporting == Decimal("45968.00")
        # Two 1000 TRY dues absorb 2000, the rest is overpayment
        assert result.overpayment == Decimal("43968.00")
        entry = db_session.query(LedgerEntry).one()
        assert entry.currency_code == "TRY"
        assert entry.amount == Decimal("45968.00")

    def test_third_currency_account_keeps_payment_reporting(
        self, db_session, allocator, site, period, unit
    ):
        """Test 33.33 USD booked into a EUR box reports the payment's 1333.20 TRY."""
        euro = LedgerSyncService(db_session).open_account(
            site.id, "Euro Box", "EUR", initial_exchange_rate=Decimal("52")
        )

        result = apply(
            allocator, unit, euro, "33.33",
            currency_code="USD", exchange_rate=Decimal("40"), account_rate=Decimal("0.9"),
        )

        payment = db_session.query(Payment).one()
        entry = db_session.query(LedgerEntry).one()
        assert result.amount_reporting == Decimal("1333.20")
        assert entry.currency_code == "EUR"
        assert entry.amount == Decimal("30.00")
        assert entry.amount_reporting == payment.amount_reporting
        db_session.refresh(euro)
        assert euro.current_balance == Decimal("30.00")

    def test_payment_without_dues_is_overpayment(self, db_session, allocator, site, unit, account):
        """Test a unit without dues keeps the whole amount as credit."""
        result = apply(allocator, unit, account, "250.00")

        assert result.allocations == []
        assert result.overpayment == Decimal("250.00")
        assert result.dues_currency == "TRY"

    def test_payment_is_audited(self, db_session, allocator, period, unit, account):
        """Test an audit row describes the payment."""
        result = apply(allocator, unit, account, "100.00", actor_id=7)

        audit = (
            db_session.query(AuditLog)
            .filter(AuditLog.entity_type == "payment", AuditLog.entity_id == result.payment_id)
            .one()
        )
        assert audit.action == "create"
        assert audit.actor_id == 7
        assert audit.changes["amount"] == "100.00"


class TestApplyPaymentValidation:
    """Test rejection of bad payments before any write."""

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_non_positive_amount(self, db_session, allocator, period, unit, account, amount):
        """Test zero and negative amounts."""
        with pytest.raises(ValidationError, match="must be positive"):
            apply(allocator, unit, account, amount)
        assert db_session.query(Payment).count() == 0

    def test_non_positive_rate(self, allocator, period, unit, account):
        """Test zero exchange rate."""
        with pytest.raises(ValidationError, match="greater than zero"):
            apply(allocator, unit, account, "10", exchange_rate=Decimal("0"))

    def test_unknown_method(self, allocator, period, unit, account):
        """Test unsupported payment method."""
        with pytest.raises(ValidationError, match="Unknown payment method"):
            apply(allocator, unit, account, "10", method="barter")

    def test_unit_of_other_site(self, db_session, allocator, period, unit, account):
        """Test the caller's site must own the unit."""
        other = Site(name="Other Site")
        db_session.add(other)
        db_session.commit()

        with pytest.raises(ValidationError, match="does not belong"):
            apply(allocator, unit, account, "10", site_id=other.id)

    def test_missing_unit(self, allocator, period, account):
        """Test unknown unit."""
        with pytest.raises(NotFoundError):
            apply(allocator, Unit(id=999), account, "10")

    def test_account_of_other_site(self, db_session, allocator, period, unit):
        """Test receiving account must belong to the unit's site."""
        other = Site(name="Other Site")
        db_session.add(other)
        db_session.flush()
        foreign = Account(site_id=other.id, name="Foreign", currency_code="TRY")
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(ValidationError, match="another site"):
            apply(allocator, unit, foreign, "10")

    def test_mixed_currency_dues(self, db_session, allocator, period, unit, account):
        """Test outstanding dues in two currencies are refused."""
        due = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)[1]
        due.currency_code = "EUR"
        db_session.commit()

        with pytest.raises(ConsistencyError, match="several currencies"):
            apply(allocator, unit, account, "10")
        assert db_session.query(Payment).count() == 0


class TestDeletePayment:
    """Test payment deletion."""

    def test_delete_restores_dues_and_account(self, db_session, allocator, period, unit, account):
        """Test deletion releases allocations and removes the entry."""
        result = apply(allocator, unit, account, "1500.00")

        allocator.delete_payment(result.payment_id)

        assert db_session.query(Payment).count() == 0
        assert db_session.query(LedgerEntry).count() == 0
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert all(due.paid_amount == Decimal("0.00") for due in dues)
        assert all(due.status == DueStatus.PENDING.value for due in dues)
        db_session.refresh(account)
        assert account.current_balance == Decimal("0.00")

    def test_delete_missing_payment(self, allocator):
        """Test unknown payment."""
        with pytest.raises(NotFoundError):
            allocator.delete_payment(999)

    def test_live_payment_without_entry(self, db_session, allocator, period, unit, account):
        """Test a payment whose entry vanished cannot be deleted silently."""
        result = apply(allocator, unit, account, "100.00")
        db_session.query(LedgerEntry).delete()
        db_session.commit()

        with pytest.raises(ConsistencyError, match="no ledger entry"):
            allocator.delete_payment(result.payment_id)

    def test_closed_period_payment_kept(
        self, db_session, allocator, period, make_period, unit, account
    ):
        """Test a payment settling dues of a closed period cannot be deleted."""
        result = apply(allocator, unit, account, "1500.00")
        next_period = make_period("Next", date(NEXT_YEAR, 3, 1), date(NEXT_YEAR + 1, 3, 1))
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        with pytest.raises(ConsistencyError, match="closed fiscal period"):
            allocator.delete_payment(result.payment_id)

        assert db_session.query(Payment).count() == 1
        assert db_session.query(LedgerEntry).count() == 1
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert sum(due.paid_amount for due in dues) == Decimal("1500.00")
        db_session.refresh(account)
        assert account.current_balance == Decimal("1500.00")


class TestReallocate:
    """Test payment replay."""

    def test_reallocate_after_new_dues(self, db_session, allocator, period, unit, account):
        """Test overpayment is applied once a later due appears."""
        apply(allocator, unit, account, "2300.00")
        payment = db_session.query(Payment).one()
        assert payment.overpayment == Decimal("300.00")

        db_session.add(
            Due(
                unit_id=unit.id,
                fiscal_period_id=period.id,
                month_date=date(NEXT_YEAR, 2, 1),
                due_date=date(NEXT_YEAR, 2, 16),
                base_amount=Decimal("500.00"),
                currency_code="TRY",
                is_from_previous_period=True,
                status=DueStatus.PENDING.value,
            )
        )
        db_session.commit()

        replayed = allocator.reallocate_unit(unit.id)

        db_session.refresh(payment)
        assert replayed == 1
        assert payment.overpayment == Decimal("0.00")
        assert len(payment.applied_to_dues) == 3
        total = sum(Decimal(r["amount_applied"]) for r in payment.applied_to_dues)
        assert total == Decimal("2300.00")

    def test_reversed_payments_not_listed(self, db_session, allocator, period, unit, account):
        """Test get_unit_payments hides reversed payments by default."""
        result = apply(allocator, unit, account, "100.00")
        entry = db_session.query(LedgerEntry).one()

        LedgerSyncService(db_session).delete_entry(entry.id)

        assert allocator.get_unit_payments(unit.id) == []
        assert [p.id for p in allocator.get_unit_payments(unit.id, include_reversed=True)] == [
            result.payment_id
        ]
