"""Ticker processing state transitions and selection."""
from typing import Any, Dict, Iterable, List, Optional, Sequence
from tickerstate.core.exceptions import TickerNotInitialized
from tickerstate.models import ProcessingSummary, TickerProcessingInfo, TickerStatus
from tickerstate.models.ticker import CAPABILITY_FLAGS, utcnow
from tickerstate.services.selection import SelectionOptions, select_candidates
from tickerstate.services.state_store import TickerStateStore
import logging
import re

logger = logging.getLogger(__name__)


# Exchange symbols: letters, digits, dots, dashes and index carets
TICKER_PATTERN = re.compile(r'^[A-Z0-9.\-^]{1,16}$')

# Priority given to tickers requested explicitly by a caller
SPECIFIC_TICKER_PRIORITY = 1


def normalize_ticker(ticker: str) -> str:
    """
    Validate and normalize a ticker symbol.
    
    Args:
        ticker: Ticker symbol to validate
        
    Returns:
        Normalized (trimmed, uppercase) ticker symbol
        
    Raises:
        ValueError: If ticker format is invalid
    """
    if not ticker or not ticker.strip():
        raise ValueError("Ticker symbol cannot be empty")
    
    normalized = ticker.strip().upper()
    
    if not TICKER_PATTERN.match(normalized):
        raise ValueError(f"Invalid ticker format: '{ticker}'")
    
    return normalized


def normalize_tickers(tickers: Iterable[str]) -> List[str]:
    """Normalize a ticker list, dropping blanks and duplicates but keeping order."""
    seen = set()
    normalized = []
    for ticker in tickers:
        if not ticker or not ticker.strip():
            continue
        symbol = normalize_ticker(ticker)
        if symbol not in seen:
            seen.add(symbol)
            normalized.append(symbol)
    return normalized


class TickerStateManager:
    """
    State machine and selection policy for one processing namespace.
    
    The manager is policy-free about retries: callers decide through
    SelectionOptions which failed tickers come back.
    """
    
    def __init__(self, store: TickerStateStore):
        self.store = store
    
    @property
    def process_type(self) -> str:
        return self.store.process_type
    
    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    
    async def initialize_ticker(
        self,
        ticker: str,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, int]:
        """Initialize a single ticker."""
        return await self.initialize_tickers([ticker], priority, metadata)
    
    async def initialize_tickers(
        self,
        tickers: Iterable[str],
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, int]:
        """
        Create missing tickers as PENDING and refresh priority on existing ones.
        
        Status and capability flags of existing records are left untouched,
        so repeated calls converge to the same state.
        
        Returns:
            {"created": n, "updated": m}
        """
        symbols = normalize_tickers(tickers)
        if not symbols:
            return {"created": 0, "updated": 0}
        
        logger.info(f"Initializing {len(symbols)} tickers for '{self.process_type}' (priority={priority})")
        created, updated = await self.store.bulk_initialize(symbols, priority, metadata)
        logger.info(f"{len(symbols)} tickers initialized ({created} created, {updated} updated)")
        
        return {"created": created, "updated": updated}
    
    async def get_ticker(self, ticker: str) -> Optional[TickerProcessingInfo]:
        """Current record for a ticker, if any."""
        return await self.store.get(normalize_ticker(ticker))
    
    async def get_specific_tickers(self, tickers: Iterable[str]) -> List[TickerProcessingInfo]:
        """
        Records for explicitly requested tickers, in input order.
        
        Missing tickers are created with elevated priority.
        """
        symbols = normalize_tickers(tickers)
        if not symbols:
            return []
        
        records = await self.store.get_many(symbols)
        missing = [symbol for symbol in symbols if symbol not in records]
        
        if missing:
            logger.info(f"Creating {len(missing)} requested tickers: {', '.join(missing)}")
            await self.store.insert_many(missing, priority=SPECIFIC_TICKER_PRIORITY)
            records.update(await self.store.get_many(missing))
        
        return [records[symbol] for symbol in symbols if symbol in records]
    
    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    
    async def get_tickers_to_process(
        self,
        limit: int = 10,
        options: Optional[SelectionOptions] = None
    ) -> List[TickerProcessingInfo]:
        """Up to ``limit`` eligible records, best candidates first."""
        options = options or SelectionOptions()
        if limit <= 0:
            return []
        
        rows = await self.store.query_candidates(options, limit)
        candidates = select_candidates(rows, limit, options)
        
        logger.debug(
            f"Selected {len(candidates)}/{len(rows)} candidate tickers "
            f"for '{self.process_type}': {[c.ticker for c in candidates]}"
        )
        return candidates
    
    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    
    async def _apply(self, ticker: str, values: Dict[str, Any]) -> None:
        """Apply a transition, creating the record first if it was never initialized."""
        try:
            await self.store.set_fields(ticker, values)
        except TickerNotInitialized:
            logger.warning(f"{ticker} was not initialized for '{self.process_type}', creating it")
            await self.store.insert_many([ticker])
            await self.store.set_fields(ticker, values)
    
    async def mark_processing(self, ticker: str) -> None:
        """Claim a ticker for an attempt. Missing tickers are left alone."""
        ticker = normalize_ticker(ticker)
        try:
            await self.store.set_fields(ticker, {
                "status": TickerStatus.PROCESSING,
                "last_processed_at": utcnow(),
            })
        except TickerNotInitialized:
            logger.warning(f"Cannot mark {ticker} as processing: not initialized for '{self.process_type}'")
    
    async def update_progress(self, ticker: str, flags: Dict[str, bool]) -> None:
        """
        Record capability flags obtained so far.
        
        Only flags set to True are written; a flag that is already True is
        never cleared. Status is not changed.
        """
        unknown = set(flags) - set(CAPABILITY_FLAGS)
        if unknown:
            raise ValueError(f"Unknown capability flags: {sorted(unknown)}")
        
        values = {name: True for name, value in flags.items() if value}
        if not values:
            return
        
        await self._apply(normalize_ticker(ticker), values)
    
    async def mark_completed(self, ticker: str) -> None:
        """Successful attempt: clears error history."""
        await self._apply(normalize_ticker(ticker), {
            "status": TickerStatus.COMPLETED,
            "last_success_at": utcnow(),
            "last_error": None,
            "error_count": 0,
        })
    
    async def mark_partial(self, ticker: str, message: Optional[str] = None) -> None:
        """Attempt ended with some but not all capabilities present."""
        await self._apply(normalize_ticker(ticker), {
            "status": TickerStatus.PARTIAL,
            "last_error": message,
        })
    
    async def mark_error(self, ticker: str, message: str) -> None:
        """Failed attempt. Capability flags already obtained are kept."""
        ticker = normalize_ticker(ticker)
        try:
            await self.store.record_failure(ticker, message)
        except TickerNotInitialized:
            logger.warning(f"{ticker} was not initialized for '{self.process_type}', creating it")
            await self.store.insert_many([ticker])
            await self.store.record_failure(ticker, message)
    
    async def mark_skipped(self, ticker: str, reason: str) -> None:
        """Exclude a ticker from selection until it is reset."""
        await self._apply(normalize_ticker(ticker), {
            "status": TickerStatus.SKIPPED,
            "last_error": reason,
        })
    
    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    
    async def recover_interrupted(self) -> int:
        """
        Fail tickers left in PROCESSING by an attempt that never settled.
        
        A single scheduler owns each namespace, so any PROCESSING record seen
        before a run starts belongs to an aborted or cancelled run. Each one
        moves to ERROR with its error count incremented, which keeps it
        eligible under the usual retry cap.
        """
        count = await self.store.fail_processing()
        if count:
            logger.warning(f"Recovered {count} interrupted tickers in '{self.process_type}'")
        return count
    
    async def reset_tickers(self, tickers: Optional[Sequence[str]] = None) -> int:
        """Return tickers (or the whole namespace when None) to fresh PENDING."""
        symbols = None if tickers is None else normalize_tickers(tickers)
        count = await self.store.reset(symbols)
        logger.info(f"Reset {count} tickers for '{self.process_type}'")
        return count
    
    async def remove_tickers(self, tickers: Sequence[str]) -> int:
        """Permanently delete tickers from this namespace."""
        count = await self.store.delete_many(normalize_tickers(tickers))
        logger.info(f"Removed {count} tickers from '{self.process_type}'")
        return count
    
    async def get_processing_summary(self) -> ProcessingSummary:
        """Counts per status plus outstanding data needs."""
        counts = await self.store.count_by_status()
        
        return ProcessingSummary(
            total=sum(counts.values()),
            pending=counts.get(TickerStatus.PENDING, 0),
            processing=counts.get(TickerStatus.PROCESSING, 0),
            completed=counts.get(TickerStatus.COMPLETED, 0),
            partial=counts.get(TickerStatus.PARTIAL, 0),
            error=counts.get(TickerStatus.ERROR, 0),
            skipped=counts.get(TickerStatus.SKIPPED, 0),
            needs_historical=await self.store.count_missing("has_historical_data"),
            needs_ttm=await self.store.count_missing("has_ttm_data"),
            needs_external_pro=await self.store.count_missing("has_external_pro_data"),
        )
