"""
DEAL ORACLE - Persistence Module

SQLite (dev) and PostgreSQL (production) storage, plus in-memory and JSON
file stores.
"""

from .database import Database, get_database
from .store import DealStore, InMemoryDealStore, SqlDealStore, JsonFileDealStore, build_store

__all__ = [
    "Database",
    "get_database",
    "DealStore",
    "InMemoryDealStore",
    "SqlDealStore",
    "JsonFileDealStore",
    "build_store",
]
