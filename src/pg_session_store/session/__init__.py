"""Session persistence package providing the PostgreSQL store, middleware and APIs."""

from .dependencies import get_session_store
from .errors import (
    InvalidConfigType,
    InvalidPoolType,
    MissingPoolOption,
    PoolNotFound,
    SessionStoreError,
    StoreNotInitialised,
)
from .middleware import StoreSessionMiddleware
from .pools import PoolRegistry, default_pool_registry
from .store import PostgresSessionStore

__all__ = [
    "InvalidConfigType",
    "InvalidPoolType",
    "MissingPoolOption",
    "PoolNotFound",
    "PoolRegistry",
    "PostgresSessionStore",
    "SessionStoreError",
    "StoreNotInitialised",
    "StoreSessionMiddleware",
    "default_pool_registry",
    "get_session_store",
]
