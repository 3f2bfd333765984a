"""Per-ticker processors invoked by the batch scheduler."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set
from tickerstate.core.config import settings
from tickerstate.core.exceptions import (
    ProcessorFatal,
    ProcessorPartialFailure,
    StoreUnavailable,
    describe_failures,
)
from tickerstate.models import TickerProcessingInfo
from tickerstate.providers import DataProvider, ProviderError
from tickerstate.providers.models import DataCategory, FetchErrorKind
from tickerstate.services.state_manager import TickerStateManager
import asyncio
import logging

logger = logging.getLogger(__name__)


@dataclass
class ProcessingOutcome:
    """Categories populated by a fully successful attempt."""
    ticker: str
    populated: Set[str] = field(default_factory=set)


class TickerProcessor(ABC):
    """Processes a single ticker for the batch scheduler."""
    
    @abstractmethod
    async def process(
        self,
        record: TickerProcessingInfo,
        categories: Iterable[DataCategory]
    ) -> ProcessingOutcome:
        """
        Obtain the requested data categories for one ticker.
        
        Returns:
            ProcessingOutcome when every category was obtained
            
        Raises:
            ProcessorPartialFailure: Some categories obtained, some failed
            ProcessorFatal: Nothing could be obtained
            ProcessorTimeout: The attempt ran out of time
        """
        pass


class CategoryProcessor(TickerProcessor):
    """
    Fetches each data category concurrently through a provider.
    
    Every successful sub-fetch is recorded with update_progress as soon as it
    lands, so the obtained subset survives a failure elsewhere in the attempt.
    """
    
    def __init__(
        self,
        provider: DataProvider,
        manager: TickerStateManager,
        sub_fetch_timeout: Optional[float] = None
    ):
        self.provider = provider
        self.manager = manager
        self.sub_fetch_timeout = sub_fetch_timeout or settings.sub_fetch_timeout_seconds
    
    async def _fetch(self, ticker: str, category: DataCategory) -> None:
        try:
            await asyncio.wait_for(
                self.provider.fetch_category(ticker, category),
                timeout=self.sub_fetch_timeout
            )
        except asyncio.TimeoutError:
            raise ProviderError(
                f"timed out after {self.sub_fetch_timeout:g}s",
                FetchErrorKind.TIMEOUT
            )
        
        await self.manager.update_progress(ticker, {category.flag: True})
        logger.debug(f"{ticker}: {category.value} data obtained")
    
    async def process(
        self,
        record: TickerProcessingInfo,
        categories: Iterable[DataCategory]
    ) -> ProcessingOutcome:
        ticker = record.ticker
        categories = list(categories)
        
        results = await asyncio.gather(
            *(self._fetch(ticker, category) for category in categories),
            return_exceptions=True
        )
        
        populated: Set[str] = set()
        failures: Dict[str, str] = {}
        kinds = []
        
        for category, result in zip(categories, results):
            if isinstance(result, StoreUnavailable):
                raise result
            if isinstance(result, ProviderError):
                failures[category.value] = f"{result.kind.value}: {result}"
                kinds.append(result.kind)
            elif isinstance(result, Exception):
                logger.error(f"{ticker}: unexpected {category.value} failure: {result}", exc_info=result)
                failures[category.value] = f"{FetchErrorKind.UNKNOWN.value}: {result}"
                kinds.append(FetchErrorKind.UNKNOWN)
            elif isinstance(result, BaseException):
                raise result
            else:
                populated.add(category.value)
        
        if not failures:
            return ProcessingOutcome(ticker=ticker, populated=populated)
        
        if populated:
            raise ProcessorPartialFailure(ticker, populated, failures)
        
        raise ProcessorFatal(
            ticker,
            describe_failures(failures),
            failures=failures,
            not_found=all(kind == FetchErrorKind.NOT_FOUND for kind in kinds)
        )
