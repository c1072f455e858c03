"""
Database Layer for the Holding Registry

Provides:
- RegistryStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema (schema.sql)
- Environment-based store selection
"""

from .store import (
    RegistryStore,
    InMemoryRegistryStore,
    PostgresRegistryStore,
    RecordContext,
    ChainHead,
    StoreError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
)
from .config import DatabaseConfig, StoreDriver, create_store, get_database_url, get_store_driver

__all__ = [
    "RegistryStore",
    "InMemoryRegistryStore",
    "PostgresRegistryStore",
    "RecordContext",
    "ChainHead",
    "StoreError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "DatabaseConfig",
    "StoreDriver",
    "create_store",
    "get_database_url",
    "get_store_driver",
]
