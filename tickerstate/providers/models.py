"""Data categories and failure kinds for provider fetches."""
import enum


class DataCategory(str, enum.Enum):
    """Independent category of per-ticker data, one per capability flag."""
    BASIC = "basic"
    HISTORICAL = "historical"
    TTM = "ttm"
    EXTERNAL_PRO = "external_pro"
    
    @property
    def flag(self) -> str:
        """Capability flag column this category populates."""
        return f"has_{self.value}_data"


class FetchErrorKind(str, enum.Enum):
    """Why a provider fetch failed."""
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


# Categories a ticker must hold to count as completed
REQUIRED_CATEGORIES = (DataCategory.BASIC, DataCategory.HISTORICAL, DataCategory.TTM)

ALL_CATEGORIES = tuple(DataCategory)
