"""Tests for due generation, re-pricing, status and allocation primitives."""

from datetime import date
from decimal import Decimal

import pytest

from dues_engine.models import AuditLog, Due, DueStatus, LedgerEntry, Payment
from dues_engine.services.due_ledger import (
    DueLedgerService,
    add_months,
    derive_status,
    month_starts,
    months_between,
)
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.payment_allocator import PaymentAllocatorService
from dues_engine.services.period_service import FiscalPeriodService

NEXT_YEAR = date.today().year + 1


def pay(db_session, unit, account, amount, day=None):
    return PaymentAllocatorService(db_session).apply_payment(
        unit_id=unit.id,
        amount=Decimal(amount),
        payment_date=day or date(NEXT_YEAR, 1, 10),
        method="cash",
        reference_no=None,
        account_id=account.id,
        category=None,
        currency_code="TRY",
        exchange_rate=Decimal("1"),
    )


class TestDateHelpers:
    """Test calendar helpers."""

    def test_add_months_clamps_to_month_end(self):
        """Test Jan 31 + 1 month lands on the last day of February."""
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_month_starts_exclusive_end(self):
        """Test that the end date itself is not a month of the period."""
        months = month_starts(date(2025, 1, 1), date(2026, 1, 1))

        assert len(months) == 12
        assert months[0] == date(2025, 1, 1)
        assert months[-1] == date(2025, 12, 1)

    def test_months_between_counts_whole_months(self):
        """Test that partial months do not count."""
        assert months_between(date(2025, 1, 16), date(2025, 4, 15)) == 2
        assert months_between(date(2025, 1, 16), date(2025, 4, 16)) == 3
        assert months_between(date(2025, 4, 16), date(2025, 1, 16)) == -3


class TestDeriveStatus:
    """Test status derivation from paid vs total."""

    def test_paid_in_full(self):
        """Test paid >= total gives paid."""
        status = derive_status(Decimal("100"), Decimal("100"), date(2020, 1, 1))
        assert status == DueStatus.PAID

    def test_partial(self):
        """Test 0 < paid < total gives partial even when late."""
        status = derive_status(Decimal("1"), Decimal("100"), date(2020, 1, 1), date(2025, 1, 1))
        assert status == DueStatus.PARTIAL

    def test_overdue_and_pending(self):
        """Test unpaid dues are overdue only after their due date."""
        due_date = date(2025, 1, 16)
        assert derive_status(Decimal("0"), Decimal("100"), due_date, date(2025, 1, 17)) == (
            DueStatus.OVERDUE
        )
        assert derive_status(Decimal("0"), Decimal("100"), due_date, date(2025, 1, 16)) == (
            DueStatus.PENDING
        )


class TestGenerateDues:
    """Test due generation."""

    def test_activation_generates_one_due_per_unit_month(self, db_session, period, units):
        """Test two units x two months."""
        dues = db_session.query(Due).filter(Due.fiscal_period_id == period.id).all()

        assert len(dues) == 4
        assert {due.month_date for due in dues} == {date(NEXT_YEAR, 1, 1), date(NEXT_YEAR, 2, 1)}
        assert all(due.base_amount == Decimal("1000.00") for due in dues)
        assert all(due.status == DueStatus.PENDING.value for due in dues)
        assert all(due.due_date == date(NEXT_YEAR, due.month_date.month, 16) for due in dues)

    def test_generate_is_idempotent(self, db_session, period):
        """Test a second run creates nothing."""
        service = DueLedgerService(db_session)

        assert service.generate_dues(period.id, Decimal("1000.00")) == 0
        assert db_session.query(Due).count() == 4

    def test_generate_from_budget(self, db_session, make_period, units):
        """Test monthly amounts derived from the yearly budget and coefficients."""
        units["a2"].coefficient = Decimal("3")
        db_session.commit()

        period = make_period(
            "Budgeted",
            date(NEXT_YEAR, 1, 1),
            date(NEXT_YEAR, 2, 1),
            total_budget=Decimal("48000.00"),
        )

        service = DueLedgerService(db_session)
        assert service.get_unit_dues(units["a1"].id, period.id)[0].base_amount == Decimal("1000.00")
        assert service.get_unit_dues(units["a2"].id, period.id)[0].base_amount == Decimal("3000.00")

    def test_generate_rejects_negative_amount(self, db_session, period):
        """Test negative monthly amount."""
        with pytest.raises(ValidationError, match="must not be negative"):
            DueLedgerService(db_session).generate_dues(period.id, Decimal("-1"))

    def test_generate_missing_period(self, db_session):
        """Test unknown period id."""
        with pytest.raises(NotFoundError):
            DueLedgerService(db_session).generate_dues(999)

    def test_generation_is_audited(self, db_session, period):
        """Test an audit row is written for the generation."""
        actions = [row.action for row in db_session.query(AuditLog).all()]
        assert "generate_dues" in actions


class TestReprice:
    """Test re-pricing of monthly amounts."""

    def test_set_monthly_amount_updates_one_unit(self, db_session, period, units):
        """Test only the target unit changes."""
        service = DueLedgerService(db_session)

        updated = service.set_monthly_amount(
            units["a1"].id, period.id, Decimal("1200.00"), "TRY"
        )

        assert updated == 2
        a1 = service.get_unit_dues(units["a1"].id, period.id)
        a2 = service.get_unit_dues(units["a2"].id, period.id)
        assert all(due.base_amount == Decimal("1200.00") for due in a1)
        assert all(due.base_amount == Decimal("1000.00") for due in a2)

    def test_reprice_lower_reallocates_payments(self, db_session, period, unit, account):
        """Test that lowering dues moves the freed amount into overpayment."""
        pay(db_session, unit, account, "2000.00")

        DueLedgerService(db_session).set_monthly_amount(
            unit.id, period.id, Decimal("800.00"), "TRY"
        )

        payment = db_session.query(Payment).one()
        assert payment.overpayment == Decimal("400.00")
        dues = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)
        assert all(due.paid_amount == Decimal("800.00") for due in dues)
        assert all(due.status == DueStatus.PAID.value for due in dues)

    def test_reprice_without_reallocation_rejects_overpaid_due(
        self, db_session, period, unit, account
    ):
        """Test paid above the new total is refused when not reallocating."""
        pay(db_session, unit, account, "1000.00")

        with pytest.raises(ConsistencyError, match="paid"):
            DueLedgerService(db_session).set_monthly_amount(
                unit.id, period.id, Decimal("500.00"), "TRY", reallocate=False
            )

        due = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)[0]
        assert due.base_amount == Decimal("1000.00")

    def test_currency_switch_blocked_by_allocations(self, db_session, period, unit, account):
        """Test switching currency of paid dues fails."""
        pay(db_session, unit, account, "100.00")

        with pytest.raises(ConsistencyError, match="reverse its payments"):
            DueLedgerService(db_session).set_monthly_amount(
                unit.id, period.id, Decimal("20.00"), "EUR"
            )

    def test_set_varied_amounts(self, db_session, period, units):
        """Test each unit gets its own amount."""
        service = DueLedgerService(db_session)

        service.set_varied_monthly_amounts(
            period.id,
            {units["a1"].id: Decimal("900"), units["a2"].id: Decimal("1100")},
            "TRY",
        )

        assert service.get_unit_dues(units["a1"].id, period.id)[0].base_amount == Decimal("900.00")
        assert service.get_unit_dues(units["a2"].id, period.id)[0].base_amount == Decimal(
            "1100.00"
        )

    def test_set_varied_amounts_rejects_foreign_unit(self, db_session, period):
        """Test unit ids outside the site are refused."""
        with pytest.raises(ValidationError, match="do not belong"):
            DueLedgerService(db_session).set_varied_monthly_amounts(
                period.id, {999: Decimal("1")}, "TRY"
            )

    def test_set_all_units_amount(self, db_session, period):
        """Test every unit's dues change."""
        updated = DueLedgerService(db_session).set_all_units_monthly_amount(
            period.id, Decimal("750"), "TRY"
        )

        assert updated == 4
        assert {due.base_amount for due in db_session.query(Due).all()} == {Decimal("750.00")}


class TestForceDelete:
    """Test bulk due deletion."""

    def test_force_delete_unlinks_payments_and_entries(self, db_session, period, unit, account):
        """Test allocations keep their amounts with due_id cleared."""
        pay(db_session, unit, account, "500.00")

        deleted = DueLedgerService(db_session).force_delete_dues(period.id)

        assert deleted == 4
        payment = db_session.query(Payment).one()
        assert payment.applied_to_dues[0]["due_id"] is None
        assert payment.applied_to_dues[0]["amount_applied"] == "500.00"
        entry = db_session.query(LedgerEntry).one()
        assert entry.due_id is None

    def test_force_delete_by_description(self, db_session, period, unit):
        """Test the description filter ignores case and extra whitespace."""
        due = DueLedgerService(db_session).get_unit_dues(unit.id, period.id)[0]
        due.description = "Elevator  Repair"
        db_session.commit()

        deleted = DueLedgerService(db_session).force_delete_dues(period.id, "elevator repair")

        assert deleted == 1
        assert db_session.query(Due).count() == 3


class TestStatusAndPenalties:
    """Test overdue marking and penalties."""

    def test_mark_overdue(self, db_session, period, site):
        """Test dues past their due date become overdue."""
        changed = DueLedgerService(db_session).mark_overdue(site.id, date(NEXT_YEAR, 1, 20))

        # January dues are late, February dues are not yet
        assert changed == 2
        statuses = {(due.month_date.month, due.status) for due in db_session.query(Due).all()}
        assert statuses == {(1, "overdue"), (2, "pending")}

    def test_apply_penalties_once(self, db_session, period):
        """Test a 5% penalty is charged once past the threshold."""
        service = DueLedgerService(db_session)
        as_of = date(NEXT_YEAR, 4, 20)

        penalized = service.apply_penalties(period.id, as_of)
        again = service.apply_penalties(period.id, as_of)

        # Only January dues are 3+ months past their due date
        assert penalized == 2
        assert again == 0
        january = [d for d in db_session.query(Due).all() if d.month_date.month == 1]
        assert all(due.penalty_amount == Decimal("50.00") for due in january)
        assert all(due.total_amount == Decimal("1050.00") for due in january)


class TestAllocationPrimitives:
    """Test FIFO allocation primitives."""

    def test_allocate_fifo_oldest_first(self, db_session, period, unit):
        """Test 1500 fills January then half of February."""
        service = DueLedgerService(db_session)
        dues = service.outstanding_dues(unit.id)

        applied, leftover = service.allocate_fifo(dues, Decimal("1500.00"))

        assert [a.amount_applied for a in applied] == [Decimal("1000.00"), Decimal("500.00")]
        assert leftover == Decimal("0.00")
        assert dues[0].status == DueStatus.PAID.value
        assert dues[1].status == DueStatus.PARTIAL.value

    def test_record_allocation_cannot_exceed_total(self, db_session, period, unit):
        """Test over-allocation is refused."""
        service = DueLedgerService(db_session)
        due = service.outstanding_dues(unit.id)[0]

        with pytest.raises(ConsistencyError, match="exceed"):
            service.record_allocation(due, Decimal("1000.01"))

    def test_release_allocations_skips_deleted_dues(self, db_session, period, unit):
        """Test records with a cleared due id are ignored."""
        service = DueLedgerService(db_session)
        record = {
            "due_id": None,
            "month_date": date(NEXT_YEAR, 1, 1).isoformat(),
            "amount_applied": "100.00",
            "dues_currency": "TRY",
        }

        assert service.release_allocations([record]) == []

    def test_closed_period_dues_not_outstanding(self, db_session, period, make_period, unit):
        """Test dues of a closed period are never allocated to."""
        next_period = make_period(
            "Next", date(NEXT_YEAR, 3, 1), date(NEXT_YEAR, 4, 1), monthly_amount=Decimal("0")
        )
        FiscalPeriodService(db_session).close_period(period.id, next_period.id)

        outstanding = DueLedgerService(db_session).outstanding_dues(unit.id)

        assert all(due.fiscal_period_id == next_period.id for due in outstanding)
