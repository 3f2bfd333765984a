"""Caller-facing surface for one ticker processing namespace."""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Sequence
from sqlalchemy.ext.asyncio import async_sessionmaker
from tickerstate.core.config import settings
from tickerstate.models import ProcessingSummary, RunSummary
from tickerstate.models.ticker import utcnow
from tickerstate.providers import DataProvider
from tickerstate.services.batch_scheduler import BatchScheduler
from tickerstate.services.processor import CategoryProcessor, TickerProcessor
from tickerstate.services.selection import SelectionOptions
from tickerstate.services.state_manager import TickerStateManager
from tickerstate.services.state_store import TickerStateStore
from tickerstate.services.summary_reporter import SummaryReporter
import logging

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """
    Wires store, manager, processor and scheduler for one process type.
    
    Either a provider (wrapped in a CategoryProcessor) or a ready-made
    processor must be supplied.
    """
    
    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider: Optional[DataProvider] = None,
        processor: Optional[TickerProcessor] = None,
        process_type: Optional[str] = None,
        concurrency: Optional[int] = None,
        ticker_timeout: Optional[float] = None,
        sub_fetch_timeout: Optional[float] = None,
        wave_delay: Optional[float] = None,
        chunk_size: Optional[int] = None
    ):
        if provider is None and processor is None:
            raise ValueError("Either provider or processor is required")
        
        self.provider = provider
        self.store = TickerStateStore(session_factory, process_type, chunk_size)
        self.manager = TickerStateManager(self.store)
        self.reporter = SummaryReporter(self.manager)
        self.processor = processor or CategoryProcessor(provider, self.manager, sub_fetch_timeout)
        self.scheduler = BatchScheduler(
            self.manager,
            self.processor,
            concurrency=concurrency,
            ticker_timeout=ticker_timeout,
            wave_delay=wave_delay
        )
    
    @property
    def process_type(self) -> str:
        return self.store.process_type
    
    async def initialize(
        self,
        tickers: Iterable[str],
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, int]:
        """Register tickers for processing."""
        return await self.manager.initialize_tickers(tickers, priority, metadata)
    
    async def run(
        self,
        max_tickers: Optional[int] = None,
        options: Optional[SelectionOptions] = None,
        deadline: Optional[datetime] = None,
        tickers: Optional[Sequence[str]] = None
    ) -> RunSummary:
        """
        Process eligible tickers, or exactly ``tickers`` when given.
        
        Without an explicit deadline the configured max_run_minutes budget
        applies.
        """
        if deadline is None and settings.max_run_minutes:
            deadline = utcnow() + timedelta(minutes=settings.max_run_minutes)
        
        if options is None:
            options = SelectionOptions(max_error_count=settings.max_error_count)
        
        if tickers:
            return await self.scheduler.run_specific(tickers, options, deadline)
        return await self.scheduler.run(max_tickers, options, deadline)
    
    async def get_summary(self) -> ProcessingSummary:
        """Status counts for this process type."""
        return await self.reporter.snapshot()
    
    async def reset(self, tickers: Optional[Sequence[str]] = None) -> int:
        """Reset the listed tickers, or every ticker when None."""
        return await self.manager.reset_tickers(tickers)
    
    async def remove(self, tickers: Sequence[str]) -> int:
        """Delete tickers from this process type."""
        return await self.manager.remove_tickers(tickers)
    
    async def close(self):
        """Release provider resources."""
        if self.provider is not None:
            await self.provider.close()
