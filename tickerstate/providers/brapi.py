"""Brapi (brapi.dev) financial data provider implementation."""
import httpx
from typing import Any, Dict, Optional
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)
import logging
from tickerstate.providers import DataProvider, ProviderError
from tickerstate.providers.models import DataCategory, FetchErrorKind
from tickerstate.core.config import settings


logger = logging.getLogger(__name__)


# Statement modules only available on PRO plans
PRO_MODULES = ",".join([
    "balanceSheetHistory",
    "balanceSheetHistoryQuarterly",
    "incomeStatementHistory",
    "incomeStatementHistoryQuarterly",
    "cashflowHistory",
    "cashflowHistoryQuarterly",
    "defaultKeyStatisticsHistory",
    "financialDataHistory",
    "summaryProfile",
])


class BrapiProvider(DataProvider):
    """Brapi implementation of the financial data provider."""
    
    # Query parameters per data category on the /quote endpoint
    CATEGORY_PARAMS: Dict[DataCategory, Dict[str, str]] = {
        DataCategory.BASIC: {},
        DataCategory.HISTORICAL: {"range": "max", "interval": "1mo"},
        DataCategory.TTM: {"modules": "defaultKeyStatistics,financialData"},
        DataCategory.EXTERNAL_PRO: {"modules": PRO_MODULES, "fundamental": "true", "dividends": "true"},
    }
    
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key or settings.brapi_api_token
        self.base_url = (base_url or settings.brapi_base_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    
    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": "tickerstate/0.1"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers
    
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def _make_request(self, path: str, params: dict) -> dict:
        """Make HTTP request with retry logic for transient failures.
        
        Retries up to 3 times with exponential backoff for:
        - Timeout errors
        - Connection errors
        
        Does NOT retry for:
        - HTTP errors (4xx, 5xx) - those need different handling
        """
        response = await self.client.get(f"{self.base_url}{path}", params=params, headers=self._headers())
        response.raise_for_status()
        return response.json()
    
    async def fetch_category(self, ticker: str, category: DataCategory) -> Dict[str, Any]:
        """
        Fetch one data category for a ticker from Brapi.
        
        All categories use the quote endpoint with different modules.
        Includes retry logic for transient network failures.
        """
        if category == DataCategory.EXTERNAL_PRO and not self.api_key:
            raise ProviderError(
                "Brapi token not configured, PRO data unavailable",
                FetchErrorKind.NOT_FOUND
            )
        
        params = dict(self.CATEGORY_PARAMS[category])
        logger.debug(f"Fetching {category.value} data for {ticker}")
        
        try:
            data = await self._make_request(f"/quote/{ticker}", params)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise ProviderError(f"Ticker {ticker} not found on Brapi (404)", FetchErrorKind.NOT_FOUND)
            elif status == 429:
                raise ProviderError(
                    "Brapi rate limit exceeded (429). Please wait before making more requests.",
                    FetchErrorKind.RATE_LIMITED
                )
            raise ProviderError(f"Brapi API error: {str(e)}")
        except httpx.TimeoutException as e:
            raise ProviderError(f"Brapi API timeout after retries: {str(e)}", FetchErrorKind.TIMEOUT)
        except httpx.HTTPError as e:
            raise ProviderError(f"Brapi API connection error: {str(e)}")
        except ValueError as e:
            raise ProviderError(f"Invalid Brapi response: {str(e)}")
        
        results = data.get("results") or []
        if not results:
            raise ProviderError(f"No results for {ticker}", FetchErrorKind.NOT_FOUND)
        
        result = results[0]
        if not self._has_category_data(result, category):
            raise ProviderError(f"No {category.value} data for {ticker}", FetchErrorKind.NOT_FOUND)
        
        return result
    
    @staticmethod
    def _has_category_data(result: Dict[str, Any], category: DataCategory) -> bool:
        """Check that the payload actually carries the requested category."""
        if category == DataCategory.BASIC:
            return result.get("regularMarketPrice") is not None
        if category == DataCategory.HISTORICAL:
            return bool(result.get("historicalDataPrice"))
        if category == DataCategory.TTM:
            return bool(result.get("defaultKeyStatistics") or result.get("financialData"))
        return any(
            result.get(module)
            for module in ("balanceSheetHistory", "incomeStatementHistory", "cashflowHistory")
        )
    
    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
