from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, TypeVar

from psycopg import AsyncConnection
from psycopg.rows import tuple_row

from pg_session_store.config.loader import get_bool_env, get_float_env, get_int_env, get_str_env

from .errors import InvalidConfigType, StoreNotInitialised
from .models import DATA_COLUMN, DEFAULT_TABLE_NAME, DEFAULT_TTL, EXPIRES_COLUMN, SID_COLUMN
from .pools import PoolRegistry, default_pool_registry, parse_pool_ref
from .recovery import SchemaRecovery
from .schemas import StoreOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionData = dict[str, Any]
Callback = Callable[..., Any]


class PostgresSessionStore:
    """PostgreSQL-backed session store for cookie-based session middlewares.

    Every operation is a coroutine. An optional ``callback`` is invoked once
    with the terminal outcome, as ``callback(None, result)`` (or
    ``callback(None)`` for operations without a result) on success and
    ``callback(exc)`` on failure; when a callback is given, failures are
    reported to it instead of being raised.
    """

    def __init__(self, options: Mapping[str, Any], *, registry: Optional[PoolRegistry] = None) -> None:
        if not isinstance(options, Mapping):
            raise InvalidConfigType(
                f"Incorrect parameter type provided: {type(self).__name__} expects a mapping, "
                f"got {type(options).__name__}"
            )
        settings = StoreOptions.from_mapping(options)
        self.table_name = settings.table_name
        self.ttl = settings.ttl
        self.disable_touch = settings.disable_touch

        self._registry = registry if registry is not None else default_pool_registry
        self._resolved = self._registry.resolve(parse_pool_ref(options.get("pool")))
        self.pool: Any = self._resolved.pool

        self._recovery = SchemaRecovery(
            self._create_table,
            max_attempts=settings.max_attempts,
            retry_backoff=settings.retry_backoff,
        )
        self._init_lock = asyncio.Lock()
        self._initialised = False

    @classmethod
    def from_env(cls, *, registry: Optional[PoolRegistry] = None) -> "PostgresSessionStore":
        """Build a store from ``SESSION_*`` environment variables."""
        options = {
            "table_name": get_str_env("SESSION_TABLE_NAME", DEFAULT_TABLE_NAME),
            "ttl": get_int_env("SESSION_TTL", DEFAULT_TTL),
            "disable_touch": get_bool_env("SESSION_DISABLE_TOUCH", False),
            "max_attempts": get_int_env("SESSION_MAX_PROVISION_ATTEMPTS", 3),
            "retry_backoff": get_float_env("SESSION_PROVISION_BACKOFF", 0.05),
            "pool": {
                "name": get_str_env("SESSION_POOL_NAME", "sessions"),
                "conninfo": get_str_env("SESSION_DATABASE_URL", "postgresql://localhost/sessions"),
                "min_size": get_int_env("SESSION_POOL_MIN_SIZE", 1),
                "max_size": get_int_env("SESSION_POOL_MAX_SIZE", 4),
            },
        }
        return cls(options, registry=registry)

    @property
    def closed(self) -> bool:
        return self.pool is None

    @property
    def recovery(self) -> SchemaRecovery:
        return self._recovery

    async def init(self) -> None:
        """Open or reconfigure the pool. The first operation awaits this implicitly."""
        if self._initialised:
            return
        async with self._init_lock:
            if self._initialised:
                return
            await self._registry.prepare(self._resolved)
            self._initialised = True
        logger.info("Session store ready on table %s", self.table_name)

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is None:
            return
        self._registry.discard(pool)
        await pool.close()
        logger.info("Session store on table %s closed", self.table_name)

    async def all(self, callback: Optional[Callback] = None) -> Optional[list[SessionData]]:
        return await self._complete("all", self._all, callback, has_result=True)

    async def get(self, sid: str, callback: Optional[Callback] = None) -> Optional[SessionData]:
        """Return the session stored under ``sid``, or ``None``."""
        return await self._complete("get", partial(self._get, sid), callback, has_result=True)

    async def set(self, sid: str, session: Mapping[str, Any], callback: Optional[Callback] = None) -> None:
        """Insert or replace the session stored under ``sid``."""
        await self._complete("set", partial(self._set, sid, session), callback)

    async def touch(self, sid: str, session: Mapping[str, Any], callback: Optional[Callback] = None) -> None:
        """Refresh the expiry of ``sid`` without rewriting its data."""
        if self.disable_touch:
            if callback is not None:
                await _invoke(callback, None)
            return None
        await self._complete("touch", partial(self._touch, sid, session), callback)

    async def destroy(self, sid: str, callback: Optional[Callback] = None) -> None:
        await self._complete("destroy", partial(self._destroy, sid), callback)

    async def clear(self, callback: Optional[Callback] = None) -> None:
        await self._complete("clear", self._clear, callback)

    async def length(self, callback: Optional[Callback] = None) -> Optional[int]:
        return await self._complete("length", self._length, callback, has_result=True)

    async def _complete(
        self,
        operation: str,
        attempt: Callable[[], Awaitable[T]],
        callback: Optional[Callback],
        *,
        has_result: bool = False,
    ) -> Optional[T]:
        try:
            result = await self._recovery.run(operation, attempt)
        except Exception as exc:
            if callback is None:
                raise
            logger.debug("Session %s failed, reporting to callback: %s", operation, exc)
            await _invoke(callback, exc)
            return None
        if callback is not None:
            if has_result:
                await _invoke(callback, None, result)
            else:
                await _invoke(callback, None)
        return result

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        await self.init()
        if self.pool is None:
            raise StoreNotInitialised("Session store has been closed")
        async with self.pool.connection() as connection:
            yield connection

    async def _all(self) -> list[SessionData]:
        query = f"SELECT {DATA_COLUMN} FROM {self.table_name}"
        async with self._connection() as connection:
            async with connection.cursor(row_factory=tuple_row) as cursor:
                await cursor.execute(query)
                rows = await cursor.fetchall()
        return [_decode(row[0]) for row in rows if row[0] is not None]

    async def _get(self, sid: str) -> Optional[SessionData]:
        query = f"SELECT {DATA_COLUMN} FROM {self.table_name} WHERE {SID_COLUMN} = %s LIMIT 1"
        async with self._connection() as connection:
            async with connection.cursor(row_factory=tuple_row) as cursor:
                await cursor.execute(query, (sid,))
                row = await cursor.fetchone()
        if not row or row[0] is None:
            return None
        return _decode(row[0])

    async def _set(self, sid: str, session: Mapping[str, Any]) -> None:
        expires = self._get_expiration(session)
        payload = json.dumps(session, default=_json_default)
        query = (
            f"INSERT INTO {self.table_name} ({SID_COLUMN}, {DATA_COLUMN}, {EXPIRES_COLUMN}) VALUES (%s, %s, %s)"
            f" ON CONFLICT ({SID_COLUMN}) DO UPDATE"
            f" SET {DATA_COLUMN} = EXCLUDED.{DATA_COLUMN}, {EXPIRES_COLUMN} = EXCLUDED.{EXPIRES_COLUMN}"
        )
        async with self._connection() as connection:
            await connection.execute(query, (sid, payload, expires))
        logger.debug("Stored session %s (expires %s)", sid, expires)

    async def _touch(self, sid: str, session: Mapping[str, Any]) -> None:
        expires = self._get_expiration(session)
        query = f"UPDATE {self.table_name} SET {EXPIRES_COLUMN} = %s WHERE {SID_COLUMN} = %s"
        async with self._connection() as connection:
            await connection.execute(query, (expires, sid))

    async def _destroy(self, sid: str) -> None:
        query = f"DELETE FROM {self.table_name} WHERE {SID_COLUMN} = %s"
        async with self._connection() as connection:
            await connection.execute(query, (sid,))

    async def _clear(self) -> None:
        async with self._connection() as connection:
            await connection.execute(f"DELETE FROM {self.table_name}")

    async def _length(self) -> int:
        query = f"SELECT COUNT(*) FROM {self.table_name}"
        async with self._connection() as connection:
            async with connection.cursor(row_factory=tuple_row) as cursor:
                await cursor.execute(query)
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def _create_table(self) -> None:
        query = (
            f"CREATE TABLE IF NOT EXISTS {self.table_name} ("
            f"{SID_COLUMN} VARCHAR(128) NOT NULL PRIMARY KEY, "
            f"{DATA_COLUMN} TEXT CHECK ({DATA_COLUMN}::jsonb IS NOT NULL), "
            f"{EXPIRES_COLUMN} TIMESTAMPTZ)"
        )
        async with self._connection() as connection:
            async with connection.transaction():
                await connection.execute(query)
        logger.info("Created session table %s", self.table_name)

    def _get_expiration(self, session: Mapping[str, Any]) -> Optional[datetime]:
        if self.disable_touch:
            return None
        cookie = session.get("cookie") if isinstance(session, Mapping) else None
        expires = cookie.get("expires") if isinstance(cookie, Mapping) else None
        if expires:
            return _to_timestamp(expires)
        return datetime.now(timezone.utc) + timedelta(seconds=self.ttl)


async def _invoke(callback: Callback, *args: Any) -> None:
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


def _decode(value: Any) -> SessionData:
    # jsonb columns come back already decoded
    if isinstance(value, (str, bytes, bytearray)):
        return json.loads(value)
    return value


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _to_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # epoch milliseconds, as emitted by JavaScript clients
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
