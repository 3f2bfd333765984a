"""Aggregated views over processing state and scheduler runs."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class ProcessingSummary:
    """Record counts for one process type."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    partial: int = 0
    error: int = 0
    skipped: int = 0
    needs_historical: int = 0
    needs_ttm: int = 0
    needs_external_pro: int = 0
    
    @property
    def completion_pct(self) -> float:
        """Share of records that are COMPLETED, in percent."""
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 1)


@dataclass
class WaveSummary:
    """Outcome of one wave of concurrent ticker attempts."""
    number: int
    tickers: List[str]
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0


@dataclass
class RunSummary:
    """Running totals for one scheduler run."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    stop_reason: Optional[str] = None  # exhausted, limit, deadline
    waves: List[WaveSummary] = field(default_factory=list)
    
    @property
    def attempted(self) -> int:
        return self.succeeded + self.partial + self.failed + self.skipped
    
    def add_wave(self, wave: WaveSummary) -> None:
        self.waves.append(wave)
        self.succeeded += wave.succeeded
        self.partial += wave.partial
        self.failed += wave.failed
        self.skipped += wave.skipped
