"""Core package initialization."""
from tickerstate.core.config import settings
from tickerstate.core.database import Base, create_engine, create_session_factory, init_db

__all__ = ["settings", "Base", "create_engine", "create_session_factory", "init_db"]
