"""Shared test fixtures for all test modules."""

import contextlib
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import cadence.models  # noqa: F401
from cadence.core import database as db_module
from cadence.core.database import Base, get_db
from cadence.gateways.base import PaymentMethod, Plan
from cadence.gateways.memory import InMemoryGateway

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
CUSTOMER_ID = "cus_1"

PLANS = [
    Plan(id="basic-monthly", price_cents=1000, billing_frequency_months=1, name="Basic"),
    Plan(id="premium-monthly", price_cents=2500, billing_frequency_months=1, name="Premium"),
    Plan(id="basic-quarterly", price_cents=2700, billing_frequency_months=3, name="Basic"),
    Plan(id="premium-yearly", price_cents=9000, billing_frequency_months=12, name="Premium"),
]


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for direct service and repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        # Exhaust the generator to trigger cleanup
        for _ in gen:
            pass


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def gateway(clock):
    """In-memory gateway seeded with the test catalog and one valid card."""
    gw = InMemoryGateway(plans=list(PLANS), clock=clock)
    gw.add_payment_method(CUSTOMER_ID, PaymentMethod(token="card_1", is_default=True))
    return gw
