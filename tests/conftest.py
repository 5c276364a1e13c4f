"""
Shared test fixtures for ListLoop.

This module provides common fixtures used across all test modules:
- Environment setup (dev mode, API secret)
- A controllable UTC clock
- Async SQLite database (aiosqlite, one file per test) and session factory
- In-memory ListingReader and static ToolUsageProvider
- Learning loop services wired to the test database and clock
- `sell` helper that registers a listing/item and records its sale

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest

# ---------------------------------------------------------------------------
# 1. Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

os.environ.setdefault("LISTLOOP_DEV_MODE", "1")
os.environ.setdefault(
    "LISTLOOP_API_SECRET_KEY",
    "test-secret-key-for-jwt-signing-at-least-32-bytes-long",
)

# ---------------------------------------------------------------------------
# Application imports (after env vars are set)
# ---------------------------------------------------------------------------

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from src.lib.database import build_session_factory, init_models  # noqa: E402
from src.services.anomaly_detection import AnomalyDetectionService  # noqa: E402
from src.services.listing_source import (  # noqa: E402
    InMemoryListingReader,
    ItemSnapshot,
    ListingSnapshot,
)
from src.services.outcome_recorder import OutcomeRecorder  # noqa: E402
from src.services.tool_calibration import ToolCalibrationService  # noqa: E402
from src.services.tool_usage import StaticToolUsageProvider, ToolUsageRecord  # noqa: E402

# Mid-month, so "current month" is stable under small clock advances
START_TIME = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# 2. Clock and database
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
async def engine(tmp_path):
    """
    Async SQLite engine on a fresh database file.

    A file (not :memory:) so that every session of the test sees the same
    data, including the per-organization sessions of anomaly sweeps.
    """
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'listloop-test.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# 3. Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture()
def listing_reader() -> InMemoryListingReader:
    return InMemoryListingReader()


@pytest.fixture()
def tool_usage() -> StaticToolUsageProvider:
    return StaticToolUsageProvider()


# ---------------------------------------------------------------------------
# 4. Services
# ---------------------------------------------------------------------------

@pytest.fixture()
def calibration_service(session_factory, clock) -> ToolCalibrationService:
    return ToolCalibrationService(session_factory=session_factory, clock=clock)


@pytest.fixture()
def anomaly_service(session_factory, clock) -> AnomalyDetectionService:
    # One org at a time: SQLite allows a single writer
    return AnomalyDetectionService(session_factory=session_factory, clock=clock, concurrency=1)


@pytest.fixture()
def recorder(db_session, listing_reader, tool_usage, anomaly_service, clock) -> OutcomeRecorder:
    return OutcomeRecorder(
        db_session,
        listing_reader=listing_reader,
        tool_usage_provider=tool_usage,
        anomaly_detector=anomaly_service,
        clock=clock,
    )


@pytest.fixture()
def sell(recorder, listing_reader, tool_usage, clock):
    """
    Register a listing + item and record its sale.

    Usage:
        outcome = await sell("lst-1", sold_price=100.0, target=120.0)
    """
    async def _sell(
        listing_id: str,
        sold_price: float = 100.0,
        target: float | None = 100.0,
        floor: float | None = None,
        ceiling: float | None = None,
        org_id: str = "org-1",
        days_listed: float | None = 3,
        tools: list[tuple[str, float]] | None = None,
        research_confidence: float | None = None,
        marketplace: str = "ebay",
    ):
        item_id = f"item-{listing_id}"
        listing_reader.add_item(ItemSnapshot(
            id=item_id,
            organization_id=org_id,
            price_floor=floor,
            price_target=target,
            price_ceiling=ceiling,
            category="Electronics",
            brand="Sony",
            model="WH-1000XM4",
            research_confidence=research_confidence,
        ))
        created_at = clock() - timedelta(days=days_listed) if days_listed is not None else None
        listing_reader.add_listing(ListingSnapshot(
            id=listing_id,
            item_id=item_id,
            created_at=created_at,
            price=target,
        ))
        if tools:
            tool_usage.set_usage(
                item_id,
                [ToolUsageRecord(tool_type=t, confidence=c) for t, c in tools],
            )
        return await recorder.record_sale(listing_id, sold_price, clock(), marketplace)

    return _sell
