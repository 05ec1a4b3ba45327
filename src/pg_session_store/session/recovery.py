"""Lazy schema provisioning for the session table.

Every store operation runs through :meth:`SchemaRecovery.run`. When the
driver reports that the session table does not exist, the table is created
and the whole operation is attempted again from the start, including
connection acquisition. Provisioning rounds are capped per call so a table
that can never be created (for example, missing ``CREATE`` privilege) fails
with the driver's own error instead of looping forever.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from psycopg import errors

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNDEFINED_TABLE = "42P01"


class RecoveryState(str, Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    PROVISIONING = "provisioning"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


def is_missing_table(exc: BaseException) -> bool:
    return isinstance(exc, errors.UndefinedTable) or getattr(exc, "sqlstate", None) == UNDEFINED_TABLE


def is_concurrent_create(exc: BaseException) -> bool:
    # A racing CREATE TABLE IF NOT EXISTS can still trip over the catalog's unique index.
    return isinstance(exc, (errors.DuplicateTable, errors.UniqueViolation))


class SchemaRecovery:
    """Bounded retry-after-provisioning policy shared by all store operations."""

    def __init__(
        self,
        provision: Callable[[], Awaitable[None]],
        *,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self._provision = provision
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._lock = asyncio.Lock()
        self.provision_count = 0

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def run(self, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
        state = RecoveryState.IDLE
        rounds = 0
        last_error: Optional[BaseException] = None

        while True:
            if state in (RecoveryState.IDLE, RecoveryState.RETRYING):
                state = self._transition(operation, state, RecoveryState.EXECUTING)

            if state is RecoveryState.EXECUTING:
                try:
                    result = await attempt()
                except Exception as exc:
                    if not is_missing_table(exc):
                        self._transition(operation, state, RecoveryState.FAILED)
                        raise
                    last_error = exc
                    state = self._transition(operation, state, RecoveryState.PROVISIONING)
                    continue
                self._transition(operation, state, RecoveryState.DONE)
                return result

            # PROVISIONING
            rounds += 1
            if rounds > self._max_attempts:
                self._transition(operation, state, RecoveryState.FAILED)
                logger.error(
                    "Giving up on %s: session table still missing after %d provisioning attempts",
                    operation,
                    self._max_attempts,
                )
                if last_error is None:
                    raise errors.UndefinedTable(f"session table missing while running {operation}")
                raise last_error
            if rounds > 1:
                await asyncio.sleep(self._retry_backoff * (rounds - 1))
            try:
                await self._provision_once()
            except Exception as exc:
                if is_missing_table(exc):
                    last_error = exc
                    continue
                if not is_concurrent_create(exc):
                    self._transition(operation, state, RecoveryState.FAILED)
                    raise
                logger.info("Session table was created concurrently while handling %s", operation)
            logger.warning("Retrying %s after provisioning the session table", operation)
            state = self._transition(operation, state, RecoveryState.RETRYING)

    async def _provision_once(self) -> None:
        async with self._lock:
            self.provision_count += 1
            await self._provision()

    @staticmethod
    def _transition(operation: str, current: RecoveryState, target: RecoveryState) -> RecoveryState:
        logger.debug("%s: %s -> %s", operation, current.value, target.value)
        return target
