"""Abstract interface for per-ticker financial data providers."""
from abc import ABC, abstractmethod
from typing import Any, Dict
from tickerstate.providers.models import DataCategory, FetchErrorKind


class DataProvider(ABC):
    """Abstract base class for financial data providers."""
    
    @abstractmethod
    async def fetch_category(self, ticker: str, category: DataCategory) -> Dict[str, Any]:
        """
        Fetch one category of data for a ticker.
        
        Args:
            ticker: Stock ticker symbol
            category: Data category to populate
            
        Returns:
            Provider payload for the category
            
        Raises:
            ProviderError: If the category could not be obtained
        """
        pass
    
    async def close(self):
        """Release provider resources."""
        pass


class ProviderError(Exception):
    """Exception raised when provider API fails."""
    
    def __init__(self, message: str, kind: FetchErrorKind = FetchErrorKind.UNKNOWN):
        self.kind = kind
        super().__init__(message)


__all__ = ["DataProvider", "ProviderError", "DataCategory", "FetchErrorKind"]
