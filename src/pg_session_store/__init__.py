"""PostgreSQL-backed session persistence with lazy schema provisioning."""

from .session import PoolRegistry, PostgresSessionStore

__all__ = ["PoolRegistry", "PostgresSessionStore"]
