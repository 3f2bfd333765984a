"""Unit tests for TickerStateStore.

This module tests keyed persistence against an in-memory SQLite database:
point and bulk operations, chunked initialization, atomic error counts
and backend failure reporting.
"""
import pytest
import asyncio
from unittest.mock import patch
from sqlalchemy.ext.asyncio import create_async_engine

from tickerstate.core.database import create_session_factory
from tickerstate.core.exceptions import StoreUnavailable, TickerNotInitialized
from tickerstate.models import TickerStatus
from tickerstate.services import SelectionOptions, TickerStateStore, select_candidates
from tests.conftest import TEST_PROCESS_TYPE


# ============================================================================
# Tests for point operations
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestPointOperations:
    """Test get / set_fields / record_failure."""
    
    async def test_get_missing(self, store):
        """✅ Missing ticker → None."""
        assert await store.get("PETR4") is None
    
    async def test_insert_and_get(self, store):
        """✅ Inserted record starts PENDING with clean history."""
        await store.insert_many(["PETR4"], priority=1, metadata={"source": "ward"})
        
        record = await store.get("PETR4")
        
        assert record.status == TickerStatus.PENDING
        assert record.priority == 1
        assert record.error_count == 0
        assert record.metadata == {"source": "ward"}
        assert record.process_type == TEST_PROCESS_TYPE
        assert not any(record.flags().values())
    
    async def test_set_fields(self, store):
        """✅ Point update changes only the given columns."""
        await store.insert_many(["PETR4"])
        
        await store.set_fields("PETR4", {"status": TickerStatus.PARTIAL, "has_basic_data": True})
        
        record = await store.get("PETR4")
        assert record.status == TickerStatus.PARTIAL
        assert record.has_basic_data is True
        assert record.has_ttm_data is False
    
    async def test_set_fields_missing(self, store):
        """✅ Updating a missing record → TickerNotInitialized."""
        with pytest.raises(TickerNotInitialized) as exc:
            await store.set_fields("PETR4", {"status": TickerStatus.COMPLETED})
        
        assert exc.value.ticker == "PETR4"
    
    async def test_record_failure_increments(self, store):
        """✅ Each failure adds one to error_count."""
        await store.insert_many(["PETR4"])
        
        await store.record_failure("PETR4", "timeout")
        await store.record_failure("PETR4", "rate limited")
        
        record = await store.get("PETR4")
        assert record.status == TickerStatus.ERROR
        assert record.error_count == 2
        assert record.last_error == "rate limited"
        assert record.last_processed_at is not None
    
    async def test_record_failure_missing(self, store):
        """✅ Failure on a missing record → TickerNotInitialized."""
        with pytest.raises(TickerNotInitialized):
            await store.record_failure("PETR4", "boom")


# ============================================================================
# Tests for bulk operations
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestBulkOperations:
    """Test bulk get / insert / update / delete."""
    
    async def test_insert_skips_existing(self, store):
        """✅ Existing keys are skipped, not overwritten."""
        await store.insert_many(["PETR4"], priority=2)
        await store.set_fields("PETR4", {"status": TickerStatus.COMPLETED})
        
        await store.insert_many(["PETR4", "VALE3"], priority=0)
        
        records = await store.get_many(["PETR4", "VALE3"])
        assert records["PETR4"].status == TickerStatus.COMPLETED
        assert records["PETR4"].priority == 2
        assert records["VALE3"].status == TickerStatus.PENDING
    
    async def test_get_many_empty(self, store):
        """✅ Empty key list → empty dict."""
        assert await store.get_many([]) == {}
    
    async def test_update_many(self, store):
        """✅ Same values applied to all listed keys."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4"])
        
        count = await store.update_many(["PETR4", "VALE3"], {"priority": 2})
        
        records = await store.get_many(["PETR4", "VALE3", "ITUB4"])
        assert count == 2
        assert records["PETR4"].priority == 2
        assert records["VALE3"].priority == 2
        assert records["ITUB4"].priority == 0
    
    async def test_delete_many(self, store):
        """✅ Listed records deleted."""
        await store.insert_many(["PETR4", "VALE3"])
        
        count = await store.delete_many(["PETR4"])
        
        assert count == 1
        assert await store.get("PETR4") is None
        assert await store.get("VALE3") is not None
    
    async def test_process_types_are_isolated(self, session_factory, store):
        """✅ Same ticker in two process types are independent records."""
        other = TickerStateStore(session_factory, process_type="historical_price_fetch")
        await store.insert_many(["PETR4"])
        await other.insert_many(["PETR4"])
        
        await other.record_failure("PETR4", "boom")
        await store.delete_many(["PETR4"])
        
        assert await store.get("PETR4") is None
        record = await other.get("PETR4")
        assert record.status == TickerStatus.ERROR


# ============================================================================
# Tests for bulk_initialize
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestBulkInitialize:
    """Test split into present/new sets and chunking."""
    
    async def test_splits_existing_and_new(self, store):
        """✅ Existing tickers updated, new ones created."""
        await store.insert_many(["PETR4"])
        
        created, updated = await store.bulk_initialize(["PETR4", "VALE3", "ITUB4"], priority=1)
        
        assert (created, updated) == (2, 1)
        records = await store.get_many(["PETR4", "VALE3", "ITUB4"])
        assert all(r.priority == 1 for r in records.values())
    
    async def test_existing_status_untouched(self, store):
        """✅ Re-initialization keeps status and flags."""
        await store.insert_many(["PETR4"])
        await store.set_fields("PETR4", {"status": TickerStatus.COMPLETED, "has_ttm_data": True})
        
        await store.bulk_initialize(["PETR4"], priority=2)
        
        record = await store.get("PETR4")
        assert record.status == TickerStatus.COMPLETED
        assert record.has_ttm_data is True
        assert record.priority == 2
    
    async def test_metadata_only_written_when_given(self, store):
        """✅ metadata=None leaves existing metadata alone."""
        await store.bulk_initialize(["PETR4"], metadata={"sector": "energy"})
        await store.bulk_initialize(["PETR4"], priority=1)
        
        record = await store.get("PETR4")
        assert record.metadata == {"sector": "energy"}
    
    async def test_chunking(self, session_factory):
        """✅ Inputs above chunk size are split into chunks."""
        store = TickerStateStore(session_factory, process_type=TEST_PROCESS_TYPE, chunk_size=2)
        tickers = [f"TCK{i}" for i in range(5)]
        
        with patch.object(store, "_initialize_chunk", wraps=store._initialize_chunk) as spy:
            created, updated = await store.bulk_initialize(tickers)
        
        assert spy.call_count == 3
        assert [len(call.args[0]) for call in spy.call_args_list] == [2, 2, 1]
        assert (created, updated) == (5, 0)
    
    async def test_invalid_chunk_size(self, session_factory):
        """✅ Chunk size must be positive."""
        with pytest.raises(ValueError):
            TickerStateStore(session_factory, process_type=TEST_PROCESS_TYPE, chunk_size=-1)


# ============================================================================
# Tests for queries and reset
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestQueries:
    """Test range query, counts and reset."""
    
    async def test_query_orders_by_composite_key(self, store):
        """✅ Priority desc, never processed first, ticker asc."""
        await store.insert_many(["VALE3", "ITUB4"], priority=0)
        await store.insert_many(["WEGE3"], priority=1)
        await store.insert_many(["ABEV3"], priority=0)
        await store.record_failure("ABEV3", "boom")
        
        records = await store.query()
        
        assert [r.ticker for r in records] == ["WEGE3", "ITUB4", "VALE3", "ABEV3"]
    
    async def test_query_status_filter(self, store):
        """✅ Only requested statuses returned."""
        await store.insert_many(["PETR4", "VALE3"])
        await store.record_failure("VALE3", "boom")
        
        records = await store.query(statuses=[TickerStatus.ERROR])
        
        assert [r.ticker for r in records] == ["VALE3"]
    
    async def test_count_by_status(self, store):
        """✅ Grouped counts."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4"])
        await store.record_failure("VALE3", "timeout")
        
        counts = await store.count_by_status()
        
        assert counts == {TickerStatus.PENDING: 2, TickerStatus.ERROR: 1}
    
    async def test_count_missing_ignores_skipped(self, store):
        """✅ Skipped records do not count as needing data."""
        await store.insert_many(["PETR4", "VALE3"])
        await store.set_fields("VALE3", {"status": TickerStatus.SKIPPED})
        
        assert await store.count_missing("has_historical_data") == 1
    
    async def test_count_missing_unknown_flag(self, store):
        """✅ Unknown flag → ValueError."""
        with pytest.raises(ValueError):
            await store.count_missing("has_magic_data")
    
    async def test_reset_selected(self, store):
        """✅ Reset clears history but keeps priority."""
        await store.insert_many(["PETR4", "VALE3"], priority=2)
        await store.record_failure("PETR4", "boom")
        await store.set_fields("PETR4", {"has_basic_data": True})
        await store.record_failure("VALE3", "boom")
        
        count = await store.reset(["PETR4"])
        
        petr, vale = (await store.get("PETR4")), (await store.get("VALE3"))
        assert count == 1
        assert petr.status == TickerStatus.PENDING
        assert petr.error_count == 0
        assert petr.last_error is None
        assert petr.has_basic_data is False
        assert petr.priority == 2
        assert vale.status == TickerStatus.ERROR
    
    async def test_reset_all(self, store):
        """✅ None resets the whole process type."""
        await store.insert_many(["PETR4", "VALE3"])
        await store.set_fields("PETR4", {"status": TickerStatus.SKIPPED})
        await store.record_failure("VALE3", "boom")
        
        count = await store.reset()
        
        assert count == 2
        assert await store.count_by_status() == {TickerStatus.PENDING: 2}


# ============================================================================
# Tests for backend failures
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestStoreUnavailable:
    """Test connectivity failures surface as StoreUnavailable."""
    
    async def test_unreachable_database(self, tmp_path):
        """✅ Unopenable database → StoreUnavailable."""
        blocker = tmp_path / "not_a_directory"
        blocker.write_text("")
        engine = create_async_engine(f"sqlite+aiosqlite:///{blocker}/state.db")
        store = TickerStateStore(create_session_factory(engine), process_type=TEST_PROCESS_TYPE)
        
        try:
            with pytest.raises(StoreUnavailable):
                await store.get("PETR4")
            with pytest.raises(StoreUnavailable):
                await store.bulk_initialize(["PETR4"])
        finally:
            await engine.dispose()


# ============================================================================
# Tests for single-connection engines
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestSharedConnection:
    """Test stores on an in-memory engine serialize their sessions."""
    
    async def test_stores_share_engine_lock(self, session_factory, store):
        """✅ Every store on the same in-memory engine uses one lock."""
        other = TickerStateStore(session_factory, process_type="historical_price_fetch")
        
        assert store._lock is not None
        assert other._lock is store._lock
    
    async def test_file_database_not_serialized(self, tmp_path):
        """✅ Pooled file databases keep concurrent sessions."""
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
        try:
            store = TickerStateStore(create_session_factory(engine), process_type=TEST_PROCESS_TYPE)
            assert store._lock is None
        finally:
            await engine.dispose()
    
    async def test_concurrent_writes_all_kept(self, store):
        """✅ Overlapping updates and failures on one connection are all committed."""
        tickers = [f"TCK{i}" for i in range(8)]
        await store.insert_many(tickers)
        
        await asyncio.gather(
            *(store.set_fields(ticker, {"has_basic_data": True}) for ticker in tickers),
            *(store.set_fields(ticker, {"has_ttm_data": True}) for ticker in tickers),
            *(store.record_failure(ticker, "timeout") for ticker in tickers),
            *(store.record_failure(ticker, "timeout") for ticker in tickers),
        )
        
        records = await store.get_many(tickers)
        for ticker in tickers:
            assert records[ticker].has_basic_data is True
            assert records[ticker].has_ttm_data is True
            assert records[ticker].error_count == 2


# ============================================================================
# Tests for interrupted attempts
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestFailProcessing:
    """Test fail_processing."""
    
    async def test_moves_processing_to_error(self, store):
        """✅ PROCESSING records become ERROR with one more error."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4"])
        await store.set_fields("PETR4", {"status": TickerStatus.PROCESSING, "has_basic_data": True})
        await store.record_failure("VALE3", "timeout")
        await store.set_fields("VALE3", {"status": TickerStatus.PROCESSING})
        
        count = await store.fail_processing()
        
        petr, vale, itub = (await store.get("PETR4")), (await store.get("VALE3")), (await store.get("ITUB4"))
        assert count == 2
        assert petr.status == TickerStatus.ERROR
        assert petr.last_error == "interrupted"
        assert petr.error_count == 1
        assert petr.has_basic_data is True
        assert vale.error_count == 2
        assert itub.status == TickerStatus.PENDING
    
    async def test_scoped_to_process_type(self, session_factory, store):
        """✅ Other namespaces are untouched."""
        other = TickerStateStore(session_factory, process_type="historical_price_fetch")
        await other.insert_many(["PETR4"])
        await other.set_fields("PETR4", {"status": TickerStatus.PROCESSING})
        
        assert await store.fail_processing() == 0
        assert (await other.get("PETR4")).status == TickerStatus.PROCESSING


# ============================================================================
# Tests for query_candidates
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestQueryCandidates:
    """Test the database-side selection filter."""
    
    async def test_limit_and_order(self, store):
        """✅ Only the best ``limit`` rows are loaded."""
        await store.insert_many(["VALE3", "ITUB4", "PETR4"], priority=0)
        await store.insert_many(["WEGE3"], priority=2)
        
        records = await store.query_candidates(SelectionOptions(), 2)
        
        assert [r.ticker for r in records] == ["WEGE3", "ITUB4"]
    
    async def test_statuses(self, store):
        """✅ PROCESSING, SKIPPED and unfiltered COMPLETED excluded."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4", "BBAS3", "WEGE3"])
        await store.set_fields("PETR4", {"status": TickerStatus.PROCESSING})
        await store.set_fields("VALE3", {"status": TickerStatus.SKIPPED})
        await store.set_fields("ITUB4", {"status": TickerStatus.COMPLETED})
        await store.set_fields("BBAS3", {"status": TickerStatus.PARTIAL})
        
        records = await store.query_candidates(SelectionOptions(), 10)
        
        assert [r.ticker for r in records] == ["BBAS3", "WEGE3"]
    
    async def test_error_filters(self, store):
        """✅ exclude_errors and max_error_count applied to ERROR rows."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4"])
        await store.record_failure("VALE3", "timeout")
        for _ in range(3):
            await store.record_failure("ITUB4", "timeout")
        
        capped = await store.query_candidates(SelectionOptions(max_error_count=2), 10)
        no_errors = await store.query_candidates(SelectionOptions(exclude_errors=True), 10)
        
        assert sorted(r.ticker for r in capped) == ["PETR4", "VALE3"]
        assert [r.ticker for r in no_errors] == ["PETR4"]
    
    async def test_completeness_and_priority_filters(self, store):
        """✅ historical_only, ttm_only and priority_only narrow the rows."""
        await store.insert_many(["PETR4", "VALE3"], priority=1)
        await store.insert_many(["ITUB4"], priority=0)
        await store.set_fields("PETR4", {"status": TickerStatus.COMPLETED})
        await store.set_fields("VALE3", {"has_historical_data": True})
        
        historical = await store.query_candidates(SelectionOptions(historical_only=True), 10)
        both = await store.query_candidates(
            SelectionOptions(historical_only=True, ttm_only=True, priority_only=True), 10
        )
        
        assert [r.ticker for r in historical] == ["PETR4", "ITUB4"]
        assert [r.ticker for r in both] == ["PETR4"]
    
    async def test_exclude_tickers(self, store):
        """✅ Excluded tickers never returned."""
        await store.insert_many(["PETR4", "VALE3"])
        
        records = await store.query_candidates(SelectionOptions(exclude_tickers=frozenset({"PETR4"})), 10)
        
        assert [r.ticker for r in records] == ["VALE3"]
    
    async def test_matches_in_memory_policy(self, store):
        """✅ Database filter agrees with select_candidates over all rows."""
        await store.insert_many(["PETR4", "VALE3", "ITUB4", "BBAS3"], priority=0)
        await store.insert_many(["WEGE3"], priority=1)
        await store.record_failure("VALE3", "timeout")
        await store.set_fields("ITUB4", {"status": TickerStatus.COMPLETED, "has_ttm_data": True})
        await store.set_fields("BBAS3", {"status": TickerStatus.PARTIAL, "has_historical_data": True})
        
        for options in (
            SelectionOptions(),
            SelectionOptions(max_error_count=0),
            SelectionOptions(historical_only=True),
            SelectionOptions(ttm_only=True, exclude_errors=True),
            SelectionOptions(priority_only=True),
        ):
            expected = select_candidates(await store.query(), 10, options)
            actual = await store.query_candidates(options, 10)
            assert [r.ticker for r in actual] == [r.ticker for r in expected], options
