from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends

from .store import PostgresSessionStore

logger = logging.getLogger(__name__)

_SESSION_STORE: Optional[PostgresSessionStore] = None


def initialise_session_store() -> PostgresSessionStore:
    """Return the process-wide store, building it from ``SESSION_*`` settings when none is live.

    A store that has already been closed is replaced, so an application can
    run its lifespan more than once in the same process.
    """
    global _SESSION_STORE
    if _SESSION_STORE is not None and not _SESSION_STORE.closed:
        return _SESSION_STORE

    store = PostgresSessionStore.from_env()
    _SESSION_STORE = store
    logger.info("Built session store on table %s from environment", store.table_name)
    return store


def set_session_store(store: Optional[PostgresSessionStore]) -> None:
    global _SESSION_STORE
    _SESSION_STORE = store


def get_session_store(_: PostgresSessionStore = Depends(initialise_session_store)) -> PostgresSessionStore:
    if _SESSION_STORE is None:
        raise RuntimeError("Session store has not been initialised")
    return _SESSION_STORE
