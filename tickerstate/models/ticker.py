"""Per-ticker processing state model."""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, JSON, Enum as SAEnum, UniqueConstraint, Index
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import enum
from tickerstate.core.config import settings
from tickerstate.core.database import Base


class TickerStatus(str, enum.Enum):
    """Processing status of a single ticker within one process type."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


# Capability flag columns, in display order
CAPABILITY_FLAGS = (
    "has_basic_data",
    "has_historical_data",
    "has_ttm_data",
    "has_external_pro_data",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TickerProcessingStatus(Base):
    """Processing record for one (ticker, process_type) pair."""
    
    __tablename__ = "ticker_processing_status"
    
    __table_args__ = (
        UniqueConstraint("ticker", "process_type", name="uq_ticker_processing_status_ticker_process_type"),
        Index("ix_ticker_processing_status_type_status", "process_type", "status"),
        Index("ix_ticker_processing_status_type_priority", "process_type", "priority"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String, nullable=False, index=True)
    process_type = Column(String, nullable=False)
    status = Column(
        SAEnum(TickerStatus, name="ticker_status", native_enum=False, length=16),
        default=TickerStatus.PENDING,
        nullable=False
    )
    
    # Capability flags
    has_basic_data = Column(Boolean, default=False, nullable=False)
    has_historical_data = Column(Boolean, default=False, nullable=False)
    has_ttm_data = Column(Boolean, default=False, nullable=False)
    has_external_pro_data = Column(Boolean, default=False, nullable=False)
    
    last_processed_at = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String, nullable=True)
    error_count = Column(Integer, default=0, nullable=False)
    priority = Column(Integer, default=0, nullable=False)  # 0 normal, 1 high, 2 urgent
    
    # Caller-owned key/value map ("metadata" is reserved on declarative classes)
    record_metadata = Column("metadata", JSON, key="record_metadata", nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    
    def to_info(self) -> "TickerProcessingInfo":
        """Detach the row into a plain value object."""
        return TickerProcessingInfo(
            ticker=self.ticker,
            process_type=self.process_type,
            status=TickerStatus(self.status),
            has_basic_data=bool(self.has_basic_data),
            has_historical_data=bool(self.has_historical_data),
            has_ttm_data=bool(self.has_ttm_data),
            has_external_pro_data=bool(self.has_external_pro_data),
            last_processed_at=as_utc(self.last_processed_at),
            last_success_at=as_utc(self.last_success_at),
            last_error=self.last_error,
            error_count=self.error_count or 0,
            priority=self.priority or 0,
            metadata=dict(self.record_metadata or {}),
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


@dataclass
class TickerProcessingInfo:
    """Read model of a processing record with derived processing needs."""
    ticker: str
    process_type: str
    status: TickerStatus
    has_basic_data: bool = False
    has_historical_data: bool = False
    has_ttm_data: bool = False
    has_external_pro_data: bool = False
    last_processed_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    priority: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    
    @property
    def needs_processing(self) -> bool:
        """Whether the record is still owed an attempt under the configured error cap."""
        if self.status in (TickerStatus.PENDING, TickerStatus.PARTIAL):
            return True
        if self.status != TickerStatus.ERROR:
            return False
        cap = settings.max_error_count
        return cap is None or self.error_count <= cap
    
    @property
    def needs_historical_data(self) -> bool:
        return not self.has_historical_data
    
    @property
    def needs_ttm_update(self) -> bool:
        """TTM figures go stale after a day."""
        if not self.has_ttm_data or self.last_processed_at is None:
            return True
        return utcnow() - self.last_processed_at > timedelta(days=1)
    
    @property
    def needs_external_pro_data(self) -> bool:
        return not self.has_external_pro_data
    
    def flags(self) -> Dict[str, bool]:
        """Capability flags keyed by column name."""
        return {name: getattr(self, name) for name in CAPABILITY_FLAGS}
