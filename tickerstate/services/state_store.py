"""Durable per-ticker processing state storage."""
from contextlib import asynccontextmanager, nullcontext
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple
from weakref import WeakKeyDictionary
from sqlalchemy import and_, or_, select, update, delete, func
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from tickerstate.core.config import settings
from tickerstate.core.exceptions import StoreUnavailable, TickerNotInitialized
from tickerstate.models import TickerProcessingInfo, TickerProcessingStatus, TickerStatus
from tickerstate.models.ticker import CAPABILITY_FLAGS, utcnow
from tickerstate.services.selection import CANDIDATE_STATUSES, SelectionOptions
import asyncio
import logging

logger = logging.getLogger(__name__)

# Errors meaning the backend itself cannot be reached
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)

# Message recorded on tickers whose attempt never settled
INTERRUPTED_MESSAGE = "interrupted"

# One lock per single-connection engine, shared by every store on it
_connection_locks: "WeakKeyDictionary[Any, asyncio.Lock]" = WeakKeyDictionary()


def _shared_connection_lock(session_factory: async_sessionmaker) -> Optional[asyncio.Lock]:
    """
    Lock for engines that hand every session the same connection.
    
    In-memory SQLite runs on a StaticPool, where concurrent sessions would
    share one transaction and discard each other's writes.
    """
    engine = getattr(session_factory, "kw", {}).get("bind")
    if engine is None:
        return None
    sync_engine = getattr(engine, "sync_engine", engine)
    if not isinstance(sync_engine.pool, StaticPool):
        return None
    if sync_engine not in _connection_locks:
        _connection_locks[sync_engine] = asyncio.Lock()
    return _connection_locks[sync_engine]


class TickerStateStore:
    """
    Keyed storage for processing records of a single process type.
    
    Every operation opens its own short-lived session and commits before
    returning, so writes are visible to the next read.
    """
    
    def __init__(
        self,
        session_factory: async_sessionmaker,
        process_type: Optional[str] = None,
        chunk_size: Optional[int] = None
    ):
        self._session_factory = session_factory
        self.process_type = process_type or settings.process_type
        self.chunk_size = chunk_size or settings.init_chunk_size
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._lock = _shared_connection_lock(session_factory)
    
    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session scope that rolls back on error and reports lost backends."""
        try:
            async with self._lock or nullcontext():
                async with self._session_factory() as session:
                    try:
                        yield session
                    except Exception as e:
                        await session.rollback()
                        logger.debug(f"Store session rolled back: {type(e).__name__}: {e}")
                        raise
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"State store unavailable ({self.process_type}): {e}")
            raise StoreUnavailable(f"State store unavailable: {e}") from e
    
    def _key_filter(self, tickers: Sequence[str]):
        return (
            TickerProcessingStatus.process_type == self.process_type,
            TickerProcessingStatus.ticker.in_(list(tickers)),
        )
    
    def _insert(self, session: AsyncSession):
        """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
        if session.get_bind().dialect.name == "postgresql":
            return postgresql_insert(TickerProcessingStatus)
        return sqlite_insert(TickerProcessingStatus)
    
    def _new_row(self, ticker: str, priority: int, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = utcnow()
        row = {
            "ticker": ticker,
            "process_type": self.process_type,
            "status": TickerStatus.PENDING,
            "last_processed_at": None,
            "last_success_at": None,
            "last_error": None,
            "error_count": 0,
            "priority": priority,
            "record_metadata": metadata,
            "created_at": now,
            "updated_at": now,
        }
        row.update({flag: False for flag in CAPABILITY_FLAGS})
        return row
    
    # ------------------------------------------------------------------
    # Point operations
    # ------------------------------------------------------------------
    
    async def get(self, ticker: str) -> Optional[TickerProcessingInfo]:
        """Fetch a single record, or None if it does not exist."""
        async with self._session() as db:
            result = await db.execute(
                select(TickerProcessingStatus).where(*self._key_filter([ticker]))
            )
            record = result.scalar_one_or_none()
            return record.to_info() if record else None
    
    async def set_fields(self, ticker: str, values: Dict[str, Any]) -> None:
        """
        Update columns of one existing record.
        
        Raises:
            TickerNotInitialized: If no record exists for the ticker
        """
        values = {**values, "updated_at": utcnow()}
        async with self._session() as db:
            result = await db.execute(
                update(TickerProcessingStatus)
                .where(*self._key_filter([ticker]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        
        if rowcount == 0:
            raise TickerNotInitialized(ticker, self.process_type)
    
    async def record_failure(self, ticker: str, message: str) -> None:
        """
        Move a record to ERROR and bump its error count in one statement.
        
        The increment happens in SQL so overlapping writers cannot lose counts.
        """
        now = utcnow()
        async with self._session() as db:
            result = await db.execute(
                update(TickerProcessingStatus)
                .where(*self._key_filter([ticker]))
                .values(
                    status=TickerStatus.ERROR,
                    last_error=message,
                    error_count=TickerProcessingStatus.error_count + 1,
                    last_processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        
        if rowcount == 0:
            raise TickerNotInitialized(ticker, self.process_type)
    
    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------
    
    async def get_many(self, tickers: Sequence[str]) -> Dict[str, TickerProcessingInfo]:
        """Fetch records for the given tickers, keyed by ticker."""
        if not tickers:
            return {}
        
        async with self._session() as db:
            result = await db.execute(
                select(TickerProcessingStatus).where(*self._key_filter(tickers))
            )
            return {record.ticker: record.to_info() for record in result.scalars().all()}
    
    async def insert_many(
        self,
        tickers: Sequence[str],
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """Insert PENDING records, skipping tickers that already exist."""
        if not tickers:
            return 0
        
        async with self._session() as db:
            stmt = self._insert(db).values(
                [self._new_row(ticker, priority, metadata) for ticker in tickers]
            ).on_conflict_do_nothing(index_elements=["ticker", "process_type"])
            result = await db.execute(stmt)
            rowcount = result.rowcount
            await db.commit()
        return max(rowcount, 0)
    
    async def update_many(self, tickers: Sequence[str], values: Dict[str, Any]) -> int:
        """Apply the same column values to every listed record."""
        if not tickers:
            return 0
        
        values = {**values, "updated_at": utcnow()}
        async with self._session() as db:
            result = await db.execute(
                update(TickerProcessingStatus)
                .where(*self._key_filter(tickers))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        return rowcount
    
    async def delete_many(self, tickers: Sequence[str]) -> int:
        """Delete the listed records."""
        if not tickers:
            return 0
        
        async with self._session() as db:
            result = await db.execute(
                delete(TickerProcessingStatus)
                .where(*self._key_filter(tickers))
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        return rowcount
    
    async def bulk_initialize(
        self,
        tickers: Sequence[str],
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, int]:
        """
        Create missing tickers and refresh priority on existing ones.
        
        Large inputs are split into chunks of ``chunk_size``; each chunk costs
        one lookup, one insert-many and one update-many.
        
        Args:
            tickers: Normalized, de-duplicated ticker symbols
            priority: Priority for created and existing records
            metadata: Optional caller-owned map stored on every record
            
        Returns:
            (created, updated) counts
        """
        created = 0
        updated = 0
        total_chunks = (len(tickers) + self.chunk_size - 1) // self.chunk_size
        
        for index in range(total_chunks):
            chunk = list(tickers[index * self.chunk_size:(index + 1) * self.chunk_size])
            if total_chunks > 1:
                logger.info(f"Initializing chunk {index + 1}/{total_chunks}: {len(chunk)} tickers")
            chunk_created, chunk_updated = await self._initialize_chunk(chunk, priority, metadata)
            created += chunk_created
            updated += chunk_updated
        
        return created, updated
    
    async def _initialize_chunk(
        self,
        tickers: List[str],
        priority: int,
        metadata: Optional[Dict[str, Any]]
    ) -> Tuple[int, int]:
        async with self._session() as db:
            result = await db.execute(
                select(TickerProcessingStatus.ticker).where(*self._key_filter(tickers))
            )
            existing = {row[0] for row in result.all()}
            new_tickers = [t for t in tickers if t not in existing]
            existing_tickers = [t for t in tickers if t in existing]
            
            logger.debug(
                f"{len(existing_tickers)} already present, {len(new_tickers)} new "
                f"({self.process_type})"
            )
            
            if new_tickers:
                await db.execute(
                    self._insert(db).values(
                        [self._new_row(ticker, priority, metadata) for ticker in new_tickers]
                    ).on_conflict_do_nothing(index_elements=["ticker", "process_type"])
                )
            
            if existing_tickers:
                values: Dict[str, Any] = {"priority": priority, "updated_at": utcnow()}
                if metadata is not None:
                    values["record_metadata"] = metadata
                await db.execute(
                    update(TickerProcessingStatus)
                    .where(*self._key_filter(existing_tickers))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            
            await db.commit()
        
        return len(new_tickers), len(existing_tickers)
    
    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    
    async def query(
        self,
        statuses: Optional[Iterable[TickerStatus]] = None,
        limit: Optional[int] = None
    ) -> List[TickerProcessingInfo]:
        """
        Range query over this process type.
        
        Rows are ordered by priority (desc), last processed time (asc, never
        processed first) and ticker.
        """
        query = select(TickerProcessingStatus).where(
            TickerProcessingStatus.process_type == self.process_type
        )
        if statuses is not None:
            query = query.where(TickerProcessingStatus.status.in_(list(statuses)))
        
        query = query.order_by(
            TickerProcessingStatus.priority.desc(),
            TickerProcessingStatus.last_processed_at.asc().nulls_first(),
            TickerProcessingStatus.ticker.asc(),
        )
        if limit is not None:
            query = query.limit(limit)
        
        async with self._session() as db:
            result = await db.execute(query)
            return [record.to_info() for record in result.scalars().all()]
    
    def _eligibility_filter(self, options: SelectionOptions):
        """SQL rendition of the selection policy in ``is_eligible``."""
        record = TickerProcessingStatus
        
        error_clause = record.status == TickerStatus.ERROR
        if options.max_error_count is not None:
            error_clause = and_(error_clause, record.error_count <= options.max_error_count)
        
        incomplete = []
        if options.historical_only:
            incomplete.append(record.has_historical_data == False)  # noqa: E712
        if options.ttm_only:
            incomplete.append(record.has_ttm_data == False)  # noqa: E712
        
        eligible_status = [record.status.in_([TickerStatus.PENDING, TickerStatus.PARTIAL])]
        if not options.exclude_errors:
            eligible_status.append(error_clause)
        if incomplete:
            eligible_status.append(and_(record.status == TickerStatus.COMPLETED, or_(*incomplete)))
        
        clauses = [
            record.process_type == self.process_type,
            record.status.in_(list(CANDIDATE_STATUSES)),
            or_(*eligible_status),
            *incomplete,
        ]
        if options.priority_only:
            clauses.append(record.priority > 0)
        if options.exclude_tickers:
            clauses.append(record.ticker.not_in(sorted(options.exclude_tickers)))
        return clauses
    
    async def query_candidates(self, options: SelectionOptions, limit: int) -> List[TickerProcessingInfo]:
        """
        Best ``limit`` records eligible under ``options``.
        
        Filtering, ordering and the limit are applied by the database so a
        wave only loads the rows it can use.
        """
        if limit <= 0:
            return []
        
        query = (
            select(TickerProcessingStatus)
            .where(*self._eligibility_filter(options))
            .order_by(
                TickerProcessingStatus.priority.desc(),
                TickerProcessingStatus.last_processed_at.asc().nulls_first(),
                TickerProcessingStatus.ticker.asc(),
            )
            .limit(limit)
        )
        
        async with self._session() as db:
            result = await db.execute(query)
            return [record.to_info() for record in result.scalars().all()]
    
    async def fail_processing(self, message: str = INTERRUPTED_MESSAGE) -> int:
        """
        Move every PROCESSING record of this namespace to ERROR.
        
        Uses the same in-SQL increment as ``record_failure``. Returns the
        number of records moved.
        """
        now = utcnow()
        async with self._session() as db:
            result = await db.execute(
                update(TickerProcessingStatus)
                .where(
                    TickerProcessingStatus.process_type == self.process_type,
                    TickerProcessingStatus.status == TickerStatus.PROCESSING,
                )
                .values(
                    status=TickerStatus.ERROR,
                    last_error=message,
                    error_count=TickerProcessingStatus.error_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        return rowcount
    
    async def count_by_status(self) -> Dict[TickerStatus, int]:
        """Number of records per status."""
        async with self._session() as db:
            result = await db.execute(
                select(TickerProcessingStatus.status, func.count(TickerProcessingStatus.id))
                .where(TickerProcessingStatus.process_type == self.process_type)
                .group_by(TickerProcessingStatus.status)
            )
            return {TickerStatus(row[0]): row[1] for row in result.all()}
    
    async def count_missing(self, flag: str) -> int:
        """Number of non-skipped records whose capability flag is not set."""
        if flag not in CAPABILITY_FLAGS:
            raise ValueError(f"Unknown capability flag: {flag}")
        
        column = getattr(TickerProcessingStatus, flag)
        async with self._session() as db:
            result = await db.execute(
                select(func.count(TickerProcessingStatus.id)).where(
                    TickerProcessingStatus.process_type == self.process_type,
                    column == False,  # noqa: E712
                    TickerProcessingStatus.status != TickerStatus.SKIPPED,
                )
            )
            return result.scalar_one()
    
    async def reset(self, tickers: Optional[Sequence[str]] = None) -> int:
        """
        Return records to a fresh PENDING state.
        
        Priority and metadata are kept. ``None`` resets the whole process type.
        """
        values: Dict[str, Any] = {
            "status": TickerStatus.PENDING,
            "last_processed_at": None,
            "last_success_at": None,
            "last_error": None,
            "error_count": 0,
            "updated_at": utcnow(),
        }
        values.update({flag: False for flag in CAPABILITY_FLAGS})
        
        if tickers is None:
            where = (TickerProcessingStatus.process_type == self.process_type,)
        elif not tickers:
            return 0
        else:
            where = self._key_filter(tickers)
        
        async with self._session() as db:
            result = await db.execute(
                update(TickerProcessingStatus)
                .where(*where)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            rowcount = result.rowcount
            await db.commit()
        return rowcount
