"""
Pytest fixtures for the dairy ledger test suite.

Provides:
- A database engine and tables for the whole session
- Per-test sessions with table cleanup
- A deterministic clock, settings and the ReceivablesService
- Seed-data factories for customers, invoices and payments
- Captured structured logs

Environment Variables:
- DATABASE_URL: connection URL.  Defaults to in-memory SQLite.  Tests
  marked ``postgres`` (real row locks) only run against PostgreSQL.
"""

import json
import logging
import os
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from io import StringIO
from itertools import count
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.db.base import Base
from dairy_ledger.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from dairy_ledger.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from dairy_ledger.domain.clock import DeterministicClock
from dairy_ledger.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from dairy_ledger.receivables.service import ReceivablesService

DEFAULT_DATABASE_URL = "sqlite:///:memory:"

TODAY = date(2024, 6, 15)


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


def pytest_collection_modifyitems(config, items):
    if is_postgres_url(get_database_url()):
        return
    skip_pg = pytest.mark.skip(reason="requires PostgreSQL (set DATABASE_URL)")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture dairy_ledger logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, receivables):
            receivables.allocate(...)
            logs = captured_logs()
            assert any(r["message"] == "allocation_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("dairy_ledger")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database infrastructure
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session."""
    eng = init_engine_from_url(
        get_database_url(), echo=False, pool_size=10, max_overflow=10
    )
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _clear_all_tables(engine) -> None:
    """Delete every row, children first."""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session(db_engine, db_tables) -> Generator[Session, None, None]:
    """
    A session that performs real commits.

    ReceivablesService owns commit/rollback, so tests exercise the real
    transaction boundary.  All rows are deleted at teardown.
    """
    sess = get_session()
    try:
        yield sess
    finally:
        sess.rollback()
        sess.close()
        _clear_all_tables(db_engine)


@pytest.fixture
def session_factory(db_engine, db_tables):
    """Session factory for tests that open one session per thread."""
    yield get_session_factory()
    _clear_all_tables(db_engine)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 6, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(database_url=get_database_url())


@pytest.fixture
def receivables(session, deterministic_clock, settings) -> ReceivablesService:
    return ReceivablesService(session, deterministic_clock, settings)


# =============================================================================
# Seed-data factories
# =============================================================================

_sequence = count(1)


@pytest.fixture
def make_customer(receivables):
    def _make(opening_balance="0", name=None, route="R1"):
        n = next(_sequence)
        return receivables.onboard_customer(
            name=name or f"Customer {n}",
            opening_balance=Decimal(str(opening_balance)),
            route=route,
        )

    return _make


@pytest.fixture
def make_invoice(receivables):
    def _make(customer_id, total, due_date=None, invoice_date=None, number=None):
        n = next(_sequence)
        return receivables.record_invoice(
            customer_id=customer_id,
            invoice_number=number or f"INV-{n:05d}",
            invoice_date=invoice_date or TODAY - timedelta(days=10),
            total_amount=Decimal(str(total)),
            due_date=due_date,
        )

    return _make


@pytest.fixture
def make_payment(receivables):
    def _make(customer_id, amount, payment_date=None):
        return receivables.record_payment(
            customer_id=customer_id,
            amount=Decimal(str(amount)),
            payment_date=payment_date or TODAY,
            payment_method="cash",
        )

    return _make


@pytest.fixture
def customer(make_customer):
    """A customer with no opening balance."""
    return make_customer("0")
