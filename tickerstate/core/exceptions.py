"""Error taxonomy for ticker state tracking and processing."""
from typing import Dict, Iterable, Optional


class TickerStateError(Exception):
    """Base class for all ticker state errors."""
    pass


class StoreUnavailable(TickerStateError):
    """Raised when the state store backend cannot be reached.
    
    Fatal for a run: no progress is possible without state.
    """
    pass


class TickerNotInitialized(TickerStateError):
    """Raised by the store when a transition targets a missing record."""
    
    def __init__(self, ticker: str, process_type: str):
        self.ticker = ticker
        self.process_type = process_type
        super().__init__(f"Ticker {ticker} is not initialized for '{process_type}'")


class ProcessorError(TickerStateError):
    """Base class for per-ticker processing failures."""
    
    def __init__(self, ticker: str, message: str):
        self.ticker = ticker
        super().__init__(message)


class ProcessorTimeout(ProcessorError):
    """Per-ticker wall-clock timeout expired."""
    pass


class ProcessorPartialFailure(ProcessorError):
    """Some capability sub-fetches succeeded and some failed."""
    
    def __init__(self, ticker: str, populated: Iterable[str], failures: Dict[str, str]):
        self.populated = set(populated)
        self.failures = dict(failures)
        super().__init__(ticker, describe_failures(self.failures))


class ProcessorFatal(ProcessorError):
    """Nothing could be obtained for a ticker in this attempt."""
    
    def __init__(
        self,
        ticker: str,
        message: str,
        failures: Optional[Dict[str, str]] = None,
        not_found: bool = False
    ):
        self.failures = dict(failures or {})
        self.not_found = not_found
        super().__init__(ticker, message)


def describe_failures(failures: Dict[str, str]) -> str:
    """Render per-category failures as a single message."""
    return "; ".join(f"{category}: {reason}" for category, reason in sorted(failures.items()))
