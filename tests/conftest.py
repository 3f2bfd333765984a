"""Shared pytest fixtures for ticker state tests."""
import pytest
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from tickerstate.core.database import create_session_factory, init_db
from tickerstate.models import TickerProcessingInfo, TickerStatus
from tickerstate.services import TickerStateManager, TickerStateStore


TEST_PROCESS_TYPE = "test_fetch"


@pytest.fixture
async def engine():
    """In-memory SQLite engine with the schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the in-memory engine."""
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    """State store for the test process type."""
    return TickerStateStore(session_factory, process_type=TEST_PROCESS_TYPE, chunk_size=100)


@pytest.fixture
def manager(store):
    """State manager over the test store."""
    return TickerStateManager(store)


def create_record(
    ticker: str = "PETR4",
    status: TickerStatus = TickerStatus.PENDING,
    priority: int = 0,
    error_count: int = 0,
    last_processed_at: Optional[datetime] = None,
    has_basic_data: bool = False,
    has_historical_data: bool = False,
    has_ttm_data: bool = False,
    has_external_pro_data: bool = False
) -> TickerProcessingInfo:
    """Factory function to create TickerProcessingInfo instances for testing."""
    return TickerProcessingInfo(
        ticker=ticker,
        process_type=TEST_PROCESS_TYPE,
        status=status,
        has_basic_data=has_basic_data,
        has_historical_data=has_historical_data,
        has_ttm_data=has_ttm_data,
        has_external_pro_data=has_external_pro_data,
        last_processed_at=last_processed_at,
        error_count=error_count,
        priority=priority
    )


def at(hour: int) -> datetime:
    """Fixed UTC timestamp on a reference day."""
    return datetime(2026, 1, 15, hour, 0, 0, tzinfo=timezone.utc)
