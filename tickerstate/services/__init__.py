"""Services package initialization."""
from tickerstate.services.state_store import TickerStateStore
from tickerstate.services.state_manager import TickerStateManager, normalize_ticker, normalize_tickers
from tickerstate.services.selection import SelectionOptions, select_candidates
from tickerstate.services.summary_reporter import SummaryReporter
from tickerstate.services.processor import CategoryProcessor, ProcessingOutcome, TickerProcessor
from tickerstate.services.batch_scheduler import BatchScheduler
from tickerstate.services.ingestion import IngestionPipeline

__all__ = [
    "TickerStateStore",
    "TickerStateManager",
    "normalize_ticker",
    "normalize_tickers",
    "SelectionOptions",
    "select_candidates",
    "SummaryReporter",
    "CategoryProcessor",
    "ProcessingOutcome",
    "TickerProcessor",
    "BatchScheduler",
    "IngestionPipeline",
]
