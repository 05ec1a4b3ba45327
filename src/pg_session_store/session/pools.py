from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Mapping, Optional

from psycopg_pool import AsyncConnectionPool
from pydantic import ValidationError

from .errors import InvalidPoolType, MissingPoolOption, PoolNotFound
from .models import AliasRef, ConfigRef, HandleRef, PoolAction, PoolRef, ResolvedPool
from .schemas import PoolConfig

logger = logging.getLogger(__name__)


def parse_pool_ref(value: Any) -> PoolRef:
    """Classify the ``pool`` store option into an alias, a live handle or a pool configuration."""
    if value is None or value == "":
        raise MissingPoolOption("Property pool is expected")
    if isinstance(value, str):
        return AliasRef(value)
    if callable(getattr(value, "connection", None)):
        return HandleRef(value)
    if isinstance(value, Mapping):
        try:
            return ConfigRef(PoolConfig.model_validate(dict(value)))
        except ValidationError as exc:
            raise InvalidPoolType(f"Invalid pool configuration: {exc}") from exc
    raise InvalidPoolType(
        "Incorrect pool type provided, expects a pool alias string, a connection pool or a pool configuration mapping"
    )


class PoolRegistry:
    """Named connection pools shared between session stores."""

    def __init__(self) -> None:
        self._pools: dict[str, Any] = {}
        # ids of pools built here that no store has opened yet
        self._unopened: set[int] = set()
        self._open_lock = asyncio.Lock()

    def __contains__(self, name: object) -> bool:
        return name in self._pools

    def register(self, name: str, pool: Any, *, opened: bool = True) -> None:
        if name in self._pools and self._pools[name] is not pool:
            logger.warning("Replacing pool registered under alias %s", name)
        self._pools[name] = pool
        if not opened:
            self._unopened.add(id(pool))

    def find(self, name: str) -> Optional[Any]:
        return self._pools.get(name)

    def get(self, name: str) -> Any:
        try:
            return self._pools[name]
        except KeyError:
            raise PoolNotFound(f"No pool registered under alias {name!r}") from None

    def discard(self, pool: Any) -> None:
        for name in [name for name, registered in self._pools.items() if registered is pool]:
            del self._pools[name]
        self._unopened.discard(id(pool))

    def create_pool(self, config: PoolConfig) -> AsyncConnectionPool:
        """Build an unopened pool from ``config`` and register it under its alias."""
        pool = AsyncConnectionPool(
            config.conninfo,
            kwargs=config.kwargs,
            min_size=config.min_size,
            max_size=config.max_size,
            name=config.name,
            timeout=config.timeout,
            open=False,
        )
        self.register(config.name, pool, opened=False)
        logger.info("Created connection pool %s (min=%s, max=%s)", config.name, config.min_size, config.max_size)
        return pool

    def resolve(self, ref: PoolRef) -> ResolvedPool:
        if isinstance(ref, AliasRef):
            return ResolvedPool(self.get(ref.alias))
        if isinstance(ref, HandleRef):
            return ResolvedPool(ref.pool)
        existing = self.find(ref.config.name)
        if existing is not None:
            return ResolvedPool(existing, PoolAction.RESIZE, ref.config)
        return ResolvedPool(self.create_pool(ref.config), PoolAction.OPEN, ref.config)

    async def prepare(self, resolved: ResolvedPool) -> None:
        """Apply the deferred part of pool resolution: open a pool built here, then resize a reused one."""
        pool = resolved.pool
        async with self._open_lock:
            if id(pool) in self._unopened:
                await pool.open()
                self._unopened.discard(id(pool))
                logger.info("Opened connection pool %s", getattr(pool, "name", None))

        if resolved.action is not PoolAction.RESIZE or resolved.config is None:
            return
        if getattr(pool, "closed", False):
            logger.warning("Not reconfiguring closed connection pool %s", resolved.config.name)
            return
        sizes = _resize_arguments(resolved.config, pool)
        if sizes is None:
            return
        outcome = pool.resize(*sizes)
        if inspect.isawaitable(outcome):
            await outcome
        logger.info("Reconfigured connection pool %s (min=%s, max=%s)", resolved.config.name, *sizes)


def _resize_arguments(config: PoolConfig, pool: Any) -> Optional[tuple[int, int]]:
    """Sizes for ``resize``: the ones ``config`` sets explicitly, the pool's current ones otherwise."""
    given = config.model_fields_set & {"min_size", "max_size"}
    if not given:
        return None
    min_size = config.min_size if "min_size" in given else pool.min_size
    max_size = config.max_size if "max_size" in given and config.max_size is not None else pool.max_size
    return min_size, max(min_size, max_size)


default_pool_registry = PoolRegistry()
