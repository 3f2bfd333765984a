"""Read-only status reporting for a processing namespace."""
from tickerstate.models import ProcessingSummary, RunSummary
from tickerstate.services.state_manager import TickerStateManager
import logging

logger = logging.getLogger(__name__)


class SummaryReporter:
    """Aggregates and renders processing status counts."""
    
    def __init__(self, manager: TickerStateManager):
        self.manager = manager
    
    async def snapshot(self) -> ProcessingSummary:
        """Current counts for the manager's process type."""
        return await self.manager.get_processing_summary()
    
    @staticmethod
    def format(summary: ProcessingSummary) -> str:
        """Render a processing summary as indented lines."""
        return "\n   ".join([
            f"Total: {summary.total} tickers",
            f"Completed: {summary.completed} ({summary.completion_pct:.1f}%)",
            f"Partial: {summary.partial}",
            f"Pending: {summary.pending}",
            f"Processing: {summary.processing}",
            f"Errors: {summary.error}",
            f"Skipped: {summary.skipped}",
            f"Need historical data: {summary.needs_historical}",
            f"Need TTM data: {summary.needs_ttm}",
            f"Need external PRO data: {summary.needs_external_pro}",
        ])
    
    @staticmethod
    def format_run(run: RunSummary) -> str:
        """Render the totals of one scheduler run."""
        duration = ""
        if run.finished_at is not None:
            duration = f" in {(run.finished_at - run.started_at).total_seconds():.1f}s"
        return (
            f"{len(run.waves)} waves{duration}: {run.attempted} attempted, "
            f"{run.succeeded} succeeded, {run.partial} partial, "
            f"{run.failed} failed, {run.skipped} skipped (stop: {run.stop_reason})"
        )
    
    async def log_snapshot(self) -> ProcessingSummary:
        """Take a snapshot and log it at INFO."""
        summary = await self.snapshot()
        logger.info(f"Processing summary for '{self.manager.process_type}':\n   {self.format(summary)}")
        return summary
