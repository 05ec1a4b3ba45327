from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfigType
from .models import DEFAULT_TABLE_NAME, DEFAULT_TTL

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)?$")


class StoreOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    table_name: str = Field(default=DEFAULT_TABLE_NAME, alias="tableName")
    ttl: int = Field(default=DEFAULT_TTL, gt=0)
    disable_touch: bool = Field(default=False, alias="disableTouch")
    max_attempts: int = Field(default=3, ge=1, alias="maxAttempts")
    retry_backoff: float = Field(default=0.05, ge=0, alias="retryBackoff")

    @field_validator("table_name", mode="before")
    @classmethod
    def default_table_name(cls, value: Any) -> Any:
        return value or DEFAULT_TABLE_NAME

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"Invalid table name {value!r}")
        return value

    @field_validator("ttl", mode="before")
    @classmethod
    def default_ttl(cls, value: Any) -> Any:
        return value or DEFAULT_TTL

    @field_validator("disable_touch", mode="before")
    @classmethod
    def default_disable_touch(cls, value: Any) -> Any:
        return False if value is None else value

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "StoreOptions":
        try:
            return cls.model_validate(dict(options))
        except ValidationError as exc:
            raise InvalidConfigType(f"Invalid session store options: {exc}") from exc


class PoolConfig(BaseModel):
    """Settings used to build (or reconfigure) an ``AsyncConnectionPool``."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="default", validation_alias=AliasChoices("name", "pool_alias", "poolAlias"))
    conninfo: str = Field(default="", validation_alias=AliasChoices("conninfo", "connect_string", "connectString"))
    min_size: int = Field(default=1, ge=0, validation_alias=AliasChoices("min_size", "poolMin"))
    max_size: Optional[int] = Field(default=None, ge=1, validation_alias=AliasChoices("max_size", "poolMax"))
    timeout: float = Field(default=30.0, gt=0)
    kwargs: Optional[dict[str, Any]] = None


class SessionCountResponse(BaseModel):
    total: int


class SessionPayloadResponse(BaseModel):
    sid: str
    session: dict[str, Any]


class DeleteResponse(BaseModel):
    success: bool
