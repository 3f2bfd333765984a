"""Models package initialization."""
from tickerstate.models.ticker import (
    CAPABILITY_FLAGS,
    TickerProcessingInfo,
    TickerProcessingStatus,
    TickerStatus,
)
from tickerstate.models.summary import ProcessingSummary, RunSummary, WaveSummary

__all__ = [
    "CAPABILITY_FLAGS",
    "TickerProcessingInfo",
    "TickerProcessingStatus",
    "TickerStatus",
    "ProcessingSummary",
    "RunSummary",
    "WaveSummary",
]
