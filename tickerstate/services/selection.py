"""Candidate selection policy for ticker processing."""
from dataclasses import dataclass, field
from typing import AbstractSet, Iterable, List, Optional, Tuple
from tickerstate.models import TickerProcessingInfo, TickerStatus


# Statuses the store query has to return for the policy to inspect
CANDIDATE_STATUSES = (
    TickerStatus.PENDING,
    TickerStatus.PARTIAL,
    TickerStatus.ERROR,
    TickerStatus.COMPLETED,
)


@dataclass
class SelectionOptions:
    """Filters applied when choosing tickers to process."""
    exclude_errors: bool = False
    max_error_count: Optional[int] = None
    priority_only: bool = False
    historical_only: bool = False
    ttm_only: bool = False
    exclude_tickers: AbstractSet[str] = field(default_factory=frozenset)


def _missing_requested_data(record: TickerProcessingInfo, options: SelectionOptions) -> bool:
    return (options.historical_only and not record.has_historical_data) or (
        options.ttm_only and not record.has_ttm_data
    )


def is_eligible(record: TickerProcessingInfo, options: SelectionOptions) -> bool:
    """Whether a record may be handed out for processing under ``options``."""
    if record.ticker in options.exclude_tickers:
        return False
    
    status = record.status
    if status in (TickerStatus.PENDING, TickerStatus.PARTIAL):
        pass
    elif status == TickerStatus.ERROR:
        if options.exclude_errors:
            return False
        if options.max_error_count is not None and record.error_count > options.max_error_count:
            return False
    elif status == TickerStatus.COMPLETED:
        if not _missing_requested_data(record, options):
            return False
    else:
        # PROCESSING and SKIPPED
        return False
    
    if options.priority_only and record.priority <= 0:
        return False
    if options.historical_only and record.has_historical_data:
        return False
    if options.ttm_only and record.has_ttm_data:
        return False
    
    return True


def selection_key(record: TickerProcessingInfo) -> Tuple:
    """Priority desc, never-processed first, oldest attempt first, then ticker."""
    processed_at = record.last_processed_at
    return (
        -record.priority,
        processed_at is not None,
        processed_at.timestamp() if processed_at is not None else 0.0,
        record.ticker,
    )


def select_candidates(
    records: Iterable[TickerProcessingInfo],
    limit: int,
    options: Optional[SelectionOptions] = None
) -> List[TickerProcessingInfo]:
    """Filter, rank and truncate records to at most ``limit`` candidates."""
    if limit <= 0:
        return []
    
    options = options or SelectionOptions()
    eligible = [record for record in records if is_eligible(record, options)]
    eligible.sort(key=selection_key)
    return eligible[:limit]
