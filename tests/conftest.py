"""Shared test fixtures and configuration."""

import os
import pytest
from decimal import Decimal
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["RATE_LIMIT_ENABLED"] = "false"

from settlement_sdk.config import SettlementSettings
from settlement_sdk.database import (
    Base,
    BookingRepository,
    create_async_engine,
    make_session_factory,
)
from settlement_sdk.ledger import SimulatorLedgerClient


@pytest.fixture
def mock_stripe_api_key():
    """Set up mock Stripe API key."""
    with patch.dict(os.environ, {"STRIPE_API_KEY": "sk_test_mock_key"}):
        yield "sk_test_mock_key"


@pytest.fixture
def auth_headers():
    """Return headers with authentication."""
    return {
        "Authorization": f"Bearer {os.environ['API_KEY']}",
        "X-Operator-Id": "ops@example.com",
    }


@pytest.fixture
def settings():
    """Default settings, independent of the environment."""
    return SettlementSettings()


@pytest.fixture
def simulator():
    """In-memory ledger."""
    client = SimulatorLedgerClient()
    yield client
    client.clear()


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = make_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_booking(db_session):
    """Create a booking matching the worked example: 100.00 base, 4.00 commission.

    Keyword arguments override any column.
    """
    async def _make(**overrides):
        fields = {
            "base_amount": Decimal("100.00"),
            "service_fee": Decimal("12.00"),
            "payment_processing_fee": Decimal("2.26"),
            "commission_partner": Decimal("4.00"),
            "payment_reference_id": "pi_example",
        }
        fields.update(overrides)
        return await BookingRepository(db_session).create(**fields)

    return _make


@pytest.fixture
def settled_payment(simulator):
    """A settled destination payment for the worked example booking.

    114.26 charged, 18.26 application fee, 17.68 platform net.
    """
    return simulator.add_payment(
        amount_minor=11426,
        application_fee_amount_minor=1826,
        fee_minor=361,
        net_minor=1768,
        destination="acct_partner",
        payment_id="pi_example",
    )
