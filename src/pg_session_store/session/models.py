from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:  # pragma: no cover
    from .schemas import PoolConfig

DEFAULT_TABLE_NAME = "stored_sessions"
DEFAULT_TTL = 86400  # one day, in seconds

SID_COLUMN = "sid"
DATA_COLUMN = "data"
EXPIRES_COLUMN = "expires"


@dataclass(frozen=True, slots=True)
class AliasRef:
    alias: str


@dataclass(frozen=True, slots=True)
class HandleRef:
    pool: Any


@dataclass(frozen=True, slots=True)
class ConfigRef:
    config: PoolConfig


PoolRef = Union[AliasRef, HandleRef, ConfigRef]


class PoolAction(str, Enum):
    READY = "ready"
    RESIZE = "resize"
    OPEN = "open"


@dataclass(slots=True)
class ResolvedPool:
    pool: Any
    action: PoolAction = PoolAction.READY
    config: Optional[PoolConfig] = None
