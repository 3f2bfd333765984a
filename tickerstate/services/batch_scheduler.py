"""Wave-based bounded-concurrency scheduler for ticker processing."""
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from tickerstate.core.config import settings
from tickerstate.core.exceptions import (
    ProcessorFatal,
    ProcessorPartialFailure,
    ProcessorTimeout,
    StoreUnavailable,
)
from tickerstate.models import RunSummary, TickerProcessingInfo, TickerStatus, WaveSummary
from tickerstate.models.ticker import as_utc, utcnow
from tickerstate.providers.models import ALL_CATEGORIES, REQUIRED_CATEGORIES, DataCategory
from tickerstate.services.processor import TickerProcessor
from tickerstate.services.selection import SelectionOptions
from tickerstate.services.state_manager import TickerStateManager
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


# Attempt outcomes
SUCCEEDED = "succeeded"
PARTIAL = "partial"
FAILED = "failed"
SKIPPED = "skipped"


class BatchScheduler:
    """
    Runs processing attempts in waves of at most ``concurrency`` tickers.
    
    A wave is selected, claimed, processed concurrently and fully settled
    before the next selection, so each wave observes every write of the
    previous one. Per-ticker failures are recorded on the ticker and never
    abort the wave; only StoreUnavailable ends a run.
    """
    
    def __init__(
        self,
        manager: TickerStateManager,
        processor: TickerProcessor,
        concurrency: Optional[int] = None,
        ticker_timeout: Optional[float] = None,
        wave_delay: Optional[float] = None,
        categories: Sequence[DataCategory] = ALL_CATEGORIES,
        required_categories: Sequence[DataCategory] = REQUIRED_CATEGORIES
    ):
        self.manager = manager
        self.processor = processor
        self.concurrency = concurrency or settings.batch_concurrency
        self.ticker_timeout = ticker_timeout or settings.ticker_timeout_seconds
        self.wave_delay = settings.wave_delay_seconds if wave_delay is None else wave_delay
        self.categories = tuple(categories)
        self.required_categories = tuple(required_categories)
        
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
    
    def categories_for(self, record: TickerProcessingInfo, options: SelectionOptions) -> List[DataCategory]:
        """
        Categories to request for a ticker in this attempt.
        
        Completeness filters narrow the request; categories already held are
        skipped unless nothing else is left to fetch.
        """
        requested = list(self.categories)
        if options.historical_only or options.ttm_only:
            requested = [
                category for category in requested
                if (options.historical_only and category == DataCategory.HISTORICAL)
                or (options.ttm_only and category == DataCategory.TTM)
            ]
        
        missing = [category for category in requested if not getattr(record, category.flag)]
        return missing or requested
    
    async def run(
        self,
        max_tickers: Optional[int] = None,
        options: Optional[SelectionOptions] = None,
        deadline: Optional[datetime] = None
    ) -> RunSummary:
        """
        Issue waves until no candidates remain, ``max_tickers`` attempts have
        been made or ``deadline`` has passed.
        
        Each ticker is attempted at most once per run. The deadline is
        checked before every wave; a running wave is always allowed to finish.
        Naive deadlines are taken as UTC. Tickers a previous run left in
        PROCESSING are failed first so they become eligible again.
        
        Raises:
            StoreUnavailable: If the state store cannot be reached
        """
        options = options or SelectionOptions()
        summary = RunSummary(started_at=utcnow())
        deadline = as_utc(deadline)
        await self.manager.recover_interrupted()
        attempted = set(options.exclude_tickers)
        
        logger.info(
            f"Starting run for '{self.manager.process_type}' "
            f"(concurrency={self.concurrency}, max_tickers={max_tickers}, deadline={deadline})"
        )
        
        while True:
            if summary.waves and self.wave_delay > 0:
                await asyncio.sleep(self.wave_delay)
            
            if deadline is not None and utcnow() >= deadline:
                summary.stop_reason = "deadline"
                logger.warning("Run deadline reached, no further waves will be issued")
                break
            
            batch_size = self.concurrency
            if max_tickers is not None:
                remaining = max_tickers - summary.attempted
                if remaining <= 0:
                    summary.stop_reason = "limit"
                    break
                batch_size = min(batch_size, remaining)
            
            candidates = await self.manager.get_tickers_to_process(
                batch_size,
                replace(options, exclude_tickers=frozenset(attempted))
            )
            if not candidates:
                summary.stop_reason = "exhausted"
                break
            
            attempted.update(record.ticker for record in candidates)
            wave = await self.run_wave(len(summary.waves) + 1, candidates, options)
            summary.add_wave(wave)
        
        summary.finished_at = utcnow()
        logger.info(
            f"Run finished ({summary.stop_reason}): {len(summary.waves)} waves, "
            f"{summary.succeeded} succeeded, {summary.partial} partial, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        return summary
    
    async def run_specific(
        self,
        tickers: Iterable[str],
        options: Optional[SelectionOptions] = None,
        deadline: Optional[datetime] = None
    ) -> RunSummary:
        """
        Process explicitly requested tickers in input order, in waves.
        
        Missing tickers are created with elevated priority. Tickers that are
        in flight or skipped are left alone.
        """
        options = options or SelectionOptions()
        summary = RunSummary(started_at=utcnow())
        deadline = as_utc(deadline)
        await self.manager.recover_interrupted()
        
        records = []
        for record in await self.manager.get_specific_tickers(tickers):
            if record.status in (TickerStatus.PROCESSING, TickerStatus.SKIPPED):
                logger.warning(f"Not processing {record.ticker}: status is {record.status.value}")
                continue
            records.append(record)
        
        for start in range(0, len(records), self.concurrency):
            if start and self.wave_delay > 0:
                await asyncio.sleep(self.wave_delay)
            if deadline is not None and utcnow() >= deadline:
                summary.stop_reason = "deadline"
                logger.warning("Run deadline reached, no further waves will be issued")
                break
            wave = await self.run_wave(
                len(summary.waves) + 1,
                records[start:start + self.concurrency],
                options
            )
            summary.add_wave(wave)
        else:
            summary.stop_reason = "exhausted"
        
        summary.finished_at = utcnow()
        return summary
    
    async def run_wave(
        self,
        number: int,
        candidates: List[TickerProcessingInfo],
        options: SelectionOptions
    ) -> WaveSummary:
        """Claim, process and settle one wave of tickers."""
        tickers = [record.ticker for record in candidates]
        logger.info(f"Wave {number}: {', '.join(tickers)}")
        started = time.monotonic()
        
        for record in candidates:
            await self.manager.mark_processing(record.ticker)
        
        results = await asyncio.gather(
            *(self.process_ticker(record, options) for record in candidates),
            return_exceptions=True
        )
        
        wave = WaveSummary(number=number, tickers=tickers)
        store_error: Optional[StoreUnavailable] = None
        
        for record, result in zip(candidates, results):
            if isinstance(result, StoreUnavailable):
                store_error = store_error or result
                continue
            if isinstance(result, BaseException):
                logger.error(f"Unhandled failure for {record.ticker}: {result}", exc_info=result)
                await self.manager.mark_error(record.ticker, f"{type(result).__name__}: {result}")
                wave.failed += 1
                continue
            setattr(wave, result, getattr(wave, result) + 1)
        
        wave.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            f"Wave {number} settled in {wave.duration_seconds:.1f}s: {wave.succeeded} succeeded, "
            f"{wave.partial} partial, {wave.failed} failed, {wave.skipped} skipped"
        )
        
        if store_error is not None:
            raise store_error
        return wave
    
    async def process_ticker(self, record: TickerProcessingInfo, options: SelectionOptions) -> str:
        """
        Run one attempt and move the ticker to its terminal status.
        
        Returns:
            One of "succeeded", "partial", "failed", "skipped"
        """
        ticker = record.ticker
        categories = self.categories_for(record, options)
        started = time.monotonic()
        
        try:
            outcome = await asyncio.wait_for(
                self.processor.process(record, categories),
                timeout=self.ticker_timeout
            )
            populated = outcome.populated
            failure_message = None
        except asyncio.TimeoutError:
            error = ProcessorTimeout(ticker, f"Timed out after {self.ticker_timeout:g}s")
            logger.warning(f"{ticker}: {error}")
            await self.manager.mark_error(ticker, str(error))
            return FAILED
        except StoreUnavailable:
            raise
        except ProcessorPartialFailure as e:
            logger.warning(f"{ticker}: partial failure ({e})")
            populated = e.populated
            failure_message = str(e)
        except ProcessorFatal as e:
            if e.not_found and not any(record.flags().values()):
                logger.warning(f"{ticker}: no data available, skipping ({e})")
                await self.manager.mark_skipped(ticker, str(e))
                return SKIPPED
            logger.error(f"{ticker}: processing failed ({e})")
            await self.manager.mark_error(ticker, str(e))
            return FAILED
        except ProcessorTimeout as e:
            logger.warning(f"{ticker}: {e}")
            await self.manager.mark_error(ticker, str(e))
            return FAILED
        except Exception as e:
            logger.error(f"{ticker}: unexpected processing error: {e}", exc_info=True)
            await self.manager.mark_error(ticker, f"{type(e).__name__}: {e}")
            return FAILED
        
        result = await self._finish(record, populated, failure_message)
        logger.info(f"{ticker}: {result} in {time.monotonic() - started:.1f}s")
        return result
    
    async def _finish(
        self,
        record: TickerProcessingInfo,
        populated: Iterable[str],
        failure_message: Optional[str]
    ) -> str:
        flags = record.flags()
        for category in populated:
            flags[DataCategory(category).flag] = True
        
        if all(flags[category.flag] for category in self.required_categories):
            await self.manager.mark_completed(record.ticker)
            return SUCCEEDED
        
        if any(flags.values()):
            missing = [c.value for c in self.required_categories if not flags[c.flag]]
            await self.manager.mark_partial(
                record.ticker,
                failure_message or f"Missing data: {', '.join(missing)}"
            )
            return PARTIAL
        
        await self.manager.mark_error(record.ticker, failure_message or "No data obtained")
        return FAILED
