"""Periodic ingestion scheduler."""
import logging
import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from tickerstate.core.config import settings
from tickerstate.workers.ingestion_worker import IngestionWorker

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class IngestionScheduler:
    """Scheduler triggering one bounded ingestion run per interval."""
    
    def __init__(self, worker: IngestionWorker = None):
        logger.info("Initializing IngestionScheduler...")
        self.scheduler = AsyncIOScheduler()
        self.worker = worker or IngestionWorker()
        logger.info("IngestionScheduler initialized")
    
    async def run_ingestion(self):
        """Run one ingestion pass."""
        try:
            await self.worker.run_once()
        except Exception as e:
            logger.error(f"Error during ingestion run: {e}", exc_info=True)
    
    def start(self):
        """Start the scheduler with the ingestion job."""
        logger.info("="*60)
        logger.info("Starting ingestion scheduler...")
        logger.info(f"Log level: {settings.log_level}")
        logger.info(f"Process type: {self.worker.pipeline.process_type}")
        logger.info(f"Run cadence: every {settings.run_cadence_minutes} minutes")
        logger.info(f"Wave concurrency: {settings.batch_concurrency}")
        logger.info("="*60)
        
        # One run at a time: a single scheduler owns the namespace
        self.scheduler.add_job(
            self.run_ingestion,
            trigger=IntervalTrigger(minutes=settings.run_cadence_minutes),
            id="ingestion_run",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        
        self.scheduler.start()
        logger.info("Scheduler started successfully")
    
    async def run(self):
        """Run scheduler indefinitely."""
        self.start()
        
        # Kick off the first run immediately instead of waiting a full interval
        await self.run_ingestion()
        
        try:
            # Keep running
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
            logger.info("Shutting down scheduler...")
            self.scheduler.shutdown()
            await self.worker.cleanup()
            raise


async def main():
    """Main entry point for scheduler."""
    scheduler = IngestionScheduler()
    await scheduler.run()


if __name__ == "__main__":
    asyncio.run(main())
