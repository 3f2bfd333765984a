"""Workers package initialization."""
from tickerstate.workers.ingestion_worker import IngestionWorker

__all__ = ["IngestionWorker"]
