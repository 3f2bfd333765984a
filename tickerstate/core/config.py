"""Core configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator, field_validator
from typing import Optional


# Valid log levels
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/tickerstate.db"
    
    # Logging
    log_level: str = "INFO"
    
    # Processing namespace
    process_type: str = "ward_data_fetch"
    
    # Bulk initialization
    init_chunk_size: int = 100
    
    # Wave scheduling
    batch_concurrency: int = 2
    ticker_timeout_seconds: float = 60.0
    sub_fetch_timeout_seconds: float = 30.0
    wave_delay_seconds: float = 0.0
    max_run_minutes: Optional[float] = None  # Global time budget per run
    max_error_count: Optional[int] = 3
    
    # Periodic driver cadence (minutes)
    run_cadence_minutes: int = 60
    
    # Brapi data provider
    brapi_base_url: str = "https://brapi.dev/api"
    brapi_api_token: Optional[str] = None  # Required for PRO fundamentals
    http_timeout_seconds: float = 30.0
    
    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        upper_v = v.upper()
        if upper_v not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")
        return upper_v
    
    @field_validator('process_type')
    @classmethod
    def validate_process_type(cls, v: str) -> str:
        """Process type must be a non-empty namespace."""
        v = v.strip()
        if not v:
            raise ValueError("process_type cannot be empty")
        return v
    
    @model_validator(mode='after')
    def validate_config(self) -> 'Settings':
        """Validate configuration after all fields are set."""
        if self.batch_concurrency < 1:
            raise ValueError("batch_concurrency must be at least 1")
        if self.init_chunk_size < 1:
            raise ValueError("init_chunk_size must be at least 1")
        if self.ticker_timeout_seconds <= 0 or self.sub_fetch_timeout_seconds <= 0:
            raise ValueError("Timeouts must be positive")
        if self.max_error_count is not None and self.max_error_count < 0:
            raise ValueError("max_error_count cannot be negative")
        return self


# Global settings instance
settings = Settings()
