"""Shared pytest fixtures: in-memory database and a small site with one active period."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dues_engine.config import reset_settings
from dues_engine.models import Base, Site, Unit
from dues_engine.services.ledger_sync import LedgerSyncService
from dues_engine.services.period_service import FiscalPeriodService

# Periods in the future keep freshly generated dues pending regardless of today's date
NEXT_YEAR = date.today().year + 1


@pytest.fixture(autouse=True)
def fresh_settings():
    """Re-read settings from the environment in every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def db_session():
    """Create test database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def site(db_session):
    """Create a TRY-reporting site."""
    site = Site(
        name="Sunrise Residences",
        reporting_currency="TRY",
        distribution_method="coefficient",
        penalty_months_threshold=3,
        penalty_percentage=Decimal("5.00"),
    )
    db_session.add(site)
    db_session.commit()
    return site


@pytest.fixture
def units(db_session, site):
    """Create two units in block A."""
    unit_a1 = Unit(site_id=site.id, block="A", unit_number="1", owner_name="Deniz Kaya")
    unit_a2 = Unit(site_id=site.id, block="A", unit_number="2", owner_name="Ali Demir")
    db_session.add_all([unit_a1, unit_a2])
    db_session.commit()
    return {"a1": unit_a1, "a2": unit_a2}


@pytest.fixture
def unit(units):
    """First unit of the site."""
    return units["a1"]


@pytest.fixture
def account(db_session, site):
    """Create the site's TRY cash account."""
    return LedgerSyncService(db_session).open_account(site.id, "Cash Box", "TRY")


@pytest.fixture
def make_period(db_session, site):
    """Factory creating (and optionally activating) periods of the site."""

    def _make(
        name,
        start_date,
        end_date,
        monthly_amount=None,
        currency_code="TRY",
        total_budget=Decimal("0"),
        activate=True,
    ):
        service = FiscalPeriodService(db_session)
        period = service.create_period(site.id, name, start_date, end_date, total_budget)
        if activate:
            service.activate_period(period.id, monthly_amount, currency_code)
        return period

    return _make


@pytest.fixture
def period(make_period, units):
    """Active two-month period with 1000 TRY monthly dues for every unit."""
    return make_period(
        str(NEXT_YEAR),
        date(NEXT_YEAR, 1, 1),
        date(NEXT_YEAR, 3, 1),
        monthly_amount=Decimal("1000.00"),
    )
