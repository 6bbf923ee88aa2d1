"""Persistence layer -- SQLite database management and the typed portfolio store."""

from invest.data.database import EngineDatabase
from invest.data.store import PortfolioStore

__all__ = ["EngineDatabase", "PortfolioStore"]
