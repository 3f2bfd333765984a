"""Ingestion worker running bounded processing runs against the state store."""
import logging
import asyncio
from typing import Optional, Sequence
from tickerstate.core.config import settings
from tickerstate.core.database import create_engine, create_session_factory, init_db
from tickerstate.core.exceptions import StoreUnavailable
from tickerstate.models import RunSummary
from tickerstate.providers.brapi import BrapiProvider
from tickerstate.services import IngestionPipeline, SelectionOptions

logger = logging.getLogger(__name__)


class IngestionWorker:
    """Worker owning the engine, provider and pipeline for one process type."""
    
    def __init__(self, process_type: Optional[str] = None, database_url: Optional[str] = None):
        self.engine = create_engine(database_url)
        self.provider = BrapiProvider()
        self.pipeline = IngestionPipeline(
            create_session_factory(self.engine),
            provider=self.provider,
            process_type=process_type
        )
        self._schema_ready = False
    
    async def _ensure_schema(self):
        """Create tables on first use."""
        if not self._schema_ready:
            await init_db(self.engine)
            self._schema_ready = True
    
    async def run_once(
        self,
        max_tickers: Optional[int] = None,
        options: Optional[SelectionOptions] = None,
        tickers: Optional[Sequence[str]] = None
    ) -> Optional[RunSummary]:
        """
        Run a single bounded processing run and log the resulting state.
        
        This is intended to be called by a scheduler (e.g., APScheduler)
        rather than running in a continuous loop.
        
        Returns:
            RunSummary, or None if the state store was unavailable
        """
        try:
            await self._ensure_schema()
            run = await self.pipeline.run(max_tickers=max_tickers, options=options, tickers=tickers)
            logger.info(f"Run complete: {self.pipeline.reporter.format_run(run)}")
            await self.pipeline.reporter.log_snapshot()
            return run
        except StoreUnavailable as e:
            logger.error(f"Run aborted, state store unavailable: {e}")
            return None
    
    async def cleanup(self):
        """Cleanup resources."""
        await self.pipeline.close()
        await self.engine.dispose()


async def main():
    """Main entry point for a single ingestion run."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    worker = IngestionWorker()
    try:
        await worker.run_once()
    finally:
        await worker.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
