from __future__ import annotations


class SessionStoreError(Exception):
    """Base class for errors raised by the session store itself."""


class InvalidConfigType(SessionStoreError, TypeError):
    """Store options are not a mapping or carry invalid values."""


class MissingPoolOption(SessionStoreError, TypeError):
    """Store options do not name a pool."""


class InvalidPoolType(SessionStoreError, TypeError):
    """The pool option is neither an alias, a pool handle nor a pool configuration."""


class PoolNotFound(SessionStoreError, LookupError):
    """No pool is registered under the requested alias."""


class StoreNotInitialised(SessionStoreError, RuntimeError):
    """An operation was attempted on a store without a usable pool."""
