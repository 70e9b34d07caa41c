"""Pydantic configuration models for the change listener."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")
_IMPORT_PATH = re.compile(r"^[a-zA-Z_][\w.]*:[a-zA-Z_]\w*$")


class SSLMode(StrEnum):
    """libpq ``sslmode`` values."""

    DISABLE = "disable"
    ALLOW = "allow"
    PREFER = "prefer"
    REQUIRE = "require"
    VERIFY_CA = "verify-ca"
    VERIFY_FULL = "verify-full"


class LogFormat(StrEnum):
    CONSOLE = "console"
    JSON = "json"


class DatabaseConfig(BaseModel):
    """Connection target for the notification session."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: str = "postgres"
    password: SecretStr = SecretStr("")
    sslmode: SSLMode = SSLMode.PREFER
    application_name: str = "change-relay"
    connect_timeout_seconds: int = Field(default=10, ge=1)

    @property
    def dsn(self) -> str:
        """libpq keyword/value connection string."""
        parts = {
            "host": self.host,
            "port": str(self.port),
            "dbname": self.database,
            "user": self.username,
            "password": self.password.get_secret_value(),
            "sslmode": self.sslmode.value,
            "application_name": self.application_name,
            "connect_timeout": str(self.connect_timeout_seconds),
        }
        return " ".join(
            f"{key}={_quote_dsn_value(value)}" for key, value in parts.items() if value
        )


def _quote_dsn_value(value: str) -> str:
    if value and not re.search(r"[\s'\\]", value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class SessionConfig(BaseModel):
    """Subscription session timing and failure policy.

    Intervals are in seconds.  ``max_reconnect_attempts = 0`` retries
    forever.
    """

    channel: str = "data_changes"
    liveness_interval_seconds: float = Field(default=15.0, gt=0)
    min_reconnect_interval_seconds: float = Field(default=10.0, gt=0)
    max_reconnect_interval_seconds: float = Field(default=60.0, gt=0)
    max_reconnect_attempts: int = Field(default=0, ge=0)
    # False: a failed liveness probe stops the listener (fail fast).
    # True: the session reconnects in place instead.
    reconnect_on_probe_failure: bool = False

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v: str) -> str:
        if not _IDENTIFIER.match(v) or len(v) > 63:
            msg = f"channel '{v}' must be a plain PostgreSQL identifier"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_reconnect_bounds(self) -> Self:
        if self.min_reconnect_interval_seconds > self.max_reconnect_interval_seconds:
            msg = (
                "min_reconnect_interval_seconds must not exceed "
                "max_reconnect_interval_seconds"
            )
            raise ValueError(msg)
        return self


class HandlerSpec(BaseModel):
    """A consumer to build from an import path and register for ``table``.

    ``factory`` is ``"package.module:attr"``; the attribute is called with
    ``kwargs`` and must return a handler (an object with ``handle`` or a
    callable).
    """

    table: str = Field(min_length=1)
    factory: str
    kwargs: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("factory")
    @classmethod
    def validate_factory(cls, v: str) -> str:
        if not _IMPORT_PATH.match(v):
            msg = f"factory '{v}' must look like 'package.module:attr'"
            raise ValueError(msg)
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: LogFormat = LogFormat.CONSOLE

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"unknown log level '{v}'"
            raise ValueError(msg)
        return level


class ListenerConfig(BaseModel):
    """Top-level configuration for one listener process."""

    listener_id: str = "change-relay"
    database: DatabaseConfig
    session: SessionConfig = SessionConfig()
    handlers: list[HandlerSpec] = Field(default_factory=list)
    logging: LoggingConfig = LoggingConfig()
    health_enabled: bool = False
    health_port: int = Field(default=8080, ge=1, le=65535)

    @model_validator(mode="after")
    def check_unique_tables(self) -> Self:
        seen: set[str] = set()
        for spec in self.handlers:
            if not spec.enabled:
                continue
            if spec.table in seen:
                msg = f"more than one enabled handler for table '{spec.table}'"
                raise ValueError(msg)
            seen.add(spec.table)
        return self
