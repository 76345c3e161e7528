"""Payment allocator: applies incoming payments to a unit's dues oldest-first."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from dues_engine.config import get_settings
from dues_engine.models.account import Account
from dues_engine.models.due import Due
from dues_engine.models.fiscal_period import FiscalPeriod, PeriodStatus
from dues_engine.models.payment import Payment, PaymentMethod
from dues_engine.models.unit import Unit
from dues_engine.services import atomic, run_with_retry
from dues_engine.services.audit_service import AuditService
from dues_engine.services.currency import ConversionRates, quantize_money, validate_rate
from dues_engine.services.due_ledger import AppliedDue, DueLedgerService
from dues_engine.services.errors import ConsistencyError, NotFoundError, ValidationError
from dues_engine.services.ledger_sync import LedgerSyncService
from dues_engine.services.unit_locks import get_unit_locks

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    """Outcome of applying one payment."""

    payment_id: int
    ledger_entry_id: int
    allocations: list[AppliedDue] = field(default_factory=list)
    overpayment: Decimal = Decimal("0.00")
    amount_in_dues_currency: Decimal = Decimal("0.00")
    amount_reporting: Decimal = Decimal("0.00")
    dues_currency: str = ""


class PaymentAllocatorService:
    """Service applying, reversing and replaying unit payments.

    Each payment produces exactly one Payment row and one income ledger entry
    (written by LedgerSyncService). Same-unit applications are serialized by a
    per-unit lock, row locks on the dues and the dues' version counter.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.dues = DueLedgerService(db)
        self.ledger = LedgerSyncService(db)

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.query(Payment).filter(Payment.id == payment_id).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_unit_payments(self, unit_id: int, include_reversed: bool = False) -> list[Payment]:
        """Get a unit's payments in application order."""
        query = self.db.query(Payment).filter(Payment.unit_id == unit_id)
        if not include_reversed:
            query = query.filter(Payment.reversed_at.is_(None))
        return query.order_by(Payment.payment_date.asc(), Payment.id.asc()).all()

    def apply_payment(
        self,
        unit_id: int,
        amount: Decimal,
        payment_date: date,
        method: PaymentMethod | str,
        reference_no: str | None,
        account_id: int,
        category: str | None,
        currency_code: str,
        exchange_rate: Decimal,
        reporting_rate: Decimal | None = None,
        account_rate: Decimal | None = None,
        site_id: int | None = None,
        notes: str | None = None,
        actor_id: int | None = None,
    ) -> AllocationResult:
        """Record a payment and apply it FIFO to the unit's outstanding dues.

        Args:
            unit_id: Paying unit
            amount: Positive amount in currency_code
            payment_date: Date received
            method: cash, bank_transfer, credit_card or other
            reference_no: Receipt or bank reference
            account_id: Receiving account
            category: Income category (default: settings.default_payment_category)
            currency_code: Payment currency
            exchange_rate: 1 payment currency = exchange_rate dues currency
            reporting_rate: 1 payment currency = reporting_rate reporting
                currency (derived when payment or dues are in the reporting currency)
            account_rate: 1 payment currency = account_rate account currency,
                when the account currency is none of the three above
            site_id: Caller's site; the unit must belong to it
            notes: Free text
            actor_id: Actor for created_by and audit stamping

        Returns:
            AllocationResult with the payment id, allocations and overpayment

        Raises:
            ValidationError: Bad amount, rate, method or currency, or unit/account
                outside the caller's site
            NotFoundError: Missing unit or account
            ConsistencyError: Outstanding dues in more than one currency
            ConcurrencyConflictError: Write conflicts outlasted the retries
        """
        amount = quantize_money(amount)
        if amount <= 0:
            logger.error("Rejected payment for unit %s: non-positive amount %s", unit_id, amount)
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        exchange_rate = validate_rate(exchange_rate)
        if reporting_rate is not None:
            reporting_rate = validate_rate(reporting_rate, "reporting_rate")
        try:
            method = PaymentMethod(method)
        except ValueError as e:
            raise ValidationError(f"Unknown payment method: {method}") from e
        if not currency_code or len(currency_code) != 3:
            raise ValidationError(
                f"currency_code must be a 3-letter ISO code, got {currency_code!r}"
            )

        unit = self.dues.get_unit(unit_id)
        if site_id is not None and unit.site_id != site_id:
            logger.error("Rejected payment: unit %s is outside site %s", unit.label, site_id)
            raise ValidationError(f"Unit {unit.label} does not belong to site {site_id}")
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        if account.site_id != unit.site_id:
            raise ValidationError(f"Account {account.name!r} belongs to another site")
        if not account.is_active:
            raise ValidationError(f"Account {account.name!r} is inactive")

        category = category or get_settings().default_payment_category

        def attempt() -> AllocationResult:
            return self._apply_locked(
                unit_id=unit_id,
                account_id=account_id,
                amount=amount,
                payment_date=payment_date,
                method=method,
                reference_no=reference_no,
                category=category,
                currency_code=currency_code,
                exchange_rate=exchange_rate,
                reporting_rate=reporting_rate,
                account_rate=account_rate,
                notes=notes,
                actor_id=actor_id,
            )

        return run_with_retry(self.db, attempt, description=f"payment for unit {unit.label}")

    def _apply_locked(
        self,
        unit_id: int,
        account_id: int,
        amount: Decimal,
        payment_date: date,
        method: PaymentMethod,
        reference_no: str | None,
        category: str,
        currency_code: str,
        exchange_rate: Decimal,
        reporting_rate: Decimal | None,
        account_rate: Decimal | None,
        notes: str | None,
        actor_id: int | None,
    ) -> AllocationResult:
        with get_unit_locks().hold(unit_id), atomic(self.db):
            unit = self.dues.get_unit(unit_id)
            site = unit.site
            account = self.db.query(Account).filter(Account.id == account_id).one()

            outstanding = self.dues.outstanding_dues(unit.id, lock=True)
            dues_currency = self._dues_currency(unit, outstanding)
            rates = ConversionRates.build(
                payment_currency=currency_code,
                dues_currency=dues_currency,
                reporting_currency=site.reporting_currency,
                exchange_rate=exchange_rate,
                reporting_rate=reporting_rate,
            )
            amount_in_dues = quantize_money(amount * rates.payment_to_dues)
            amount_reporting = quantize_money(amount * rates.payment_to_reporting)

            allocations, overpayment = self.dues.allocate_fifo(outstanding, amount_in_dues)

            payment = Payment(
                unit_id=unit.id,
                fiscal_period_id=self._attribution_period(site.id, payment_date, allocations),
                account_id=account.id,
                amount=amount,
                payment_date=payment_date,
                payment_method=method.value,
                reference_no=reference_no,
                category=category,
                currency_code=currency_code,
                exchange_rate=rates.payment_to_dues,
                dues_currency=dues_currency,
                amount_in_dues_currency=amount_in_dues,
                reporting_currency=site.reporting_currency,
                reporting_rate=rates.payment_to_reporting,
                amount_reporting=amount_reporting,
                overpayment=overpayment,
                applied_to_dues=[allocation.to_record() for allocation in allocations],
                created_by=actor_id,
                notes=notes,
            )
            self.db.add(payment)
            self.db.flush()

            entry = self.ledger.record_payment_income(
                payment, account, rates, account_rate, actor_id
            )

            AuditService.log(
                self.db, "payment", payment.id, "create", actor_id,
                {
                    "amount": str(amount),
                    "currency": currency_code,
                    "dues_amount": str(amount_in_dues),
                    "allocations": len(allocations),
                    "overpayment": str(overpayment),
                },
            )

        logger.info(
            "Applied payment %s for unit %s: %s %s -> %s %s over %d due(s), overpayment %s",
            payment.id, unit.label, amount, currency_code, amount_in_dues, dues_currency,
            len(allocations), overpayment,
        )
        return AllocationResult(
            payment_id=payment.id,
            ledger_entry_id=entry.id,
            allocations=allocations,
            overpayment=overpayment,
            amount_in_dues_currency=amount_in_dues,
            amount_reporting=amount_reporting,
            dues_currency=dues_currency,
        )

    def _dues_currency(self, unit: Unit, outstanding: list[Due]) -> str:
        currencies = {due.currency_code for due in outstanding}
        if len(currencies) > 1:
            raise ConsistencyError(
                f"Unit {unit.label} has outstanding dues in several currencies: "
                f"{sorted(currencies)}"
            )
        if currencies:
            return currencies.pop()
        latest = (
            self.db.query(Due)
            .filter(Due.unit_id == unit.id)
            .order_by(Due.month_date.desc(), Due.id.desc())
            .first()
        )
        return latest.currency_code if latest is not None else unit.site.reporting_currency

    def _attribution_period(
        self, site_id: int, payment_date: date, allocations: list[AppliedDue]
    ) -> int | None:
        period = (
            self.db.query(FiscalPeriod)
            .filter(
                FiscalPeriod.site_id == site_id,
                FiscalPeriod.status != PeriodStatus.CLOSED,
                FiscalPeriod.start_date <= payment_date,
                FiscalPeriod.end_date > payment_date,
            )
            .order_by(FiscalPeriod.start_date.desc())
            .first()
        )
        if period is not None:
            return period.id
        if allocations:
            return self.dues.get_due(allocations[0].due_id).fiscal_period_id
        return None

    def delete_payment(self, payment_id: int, actor_id: int | None = None) -> None:
        """Delete a payment together with its ledger entry.

        The ledger entry is removed first through the synchronizer, which
        releases the payment's allocations from the dues and undoes the
        account and budget effects. Then the payment row is deleted.

        Raises:
            NotFoundError: If the payment does not exist
            ConsistencyError: If a live payment has lost its ledger entry
        """
        payment = self.get_payment(payment_id)
        unit_id = payment.unit_id

        with get_unit_locks().hold(unit_id), atomic(self.db):
            entry = self.ledger.get_payment_entry(payment.id)
            if entry is not None:
                self.ledger.remove_entry(entry, actor_id)
            elif payment.reversed_at is None:
                raise ConsistencyError(f"Payment {payment.id} has no ledger entry to reverse")

            AuditService.log(
                self.db, "payment", payment.id, "delete", actor_id,
                {"amount": str(payment.amount), "currency": payment.currency_code},
            )
            self.db.delete(payment)

        logger.info("Deleted payment %s of unit %s", payment_id, unit_id)

    def reallocate_unit(self, unit_id: int, actor_id: int | None = None) -> int:
        """Replay a unit's live payments FIFO after its dues were re-priced.

        Returns:
            Number of payments replayed
        """
        unit = self.dues.get_unit(unit_id)
        with get_unit_locks().hold(unit.id), atomic(self.db):
            replayed = self.dues.reallocate_unit(unit.id)
            AuditService.log(
                self.db, "unit", unit.id, "reallocate_payments", actor_id, {"payments": replayed}
            )
        logger.info("Reallocated %d payment(s) of unit %s", replayed, unit.label)
        return replayed


__all__ = ["AllocationResult", "PaymentAllocatorService"]
