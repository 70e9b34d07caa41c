"""Health probes for the database side of the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import psycopg
import structlog

from change_relay.config.models import ListenerConfig
from change_relay.triggers import trigger_name

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class RelayHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_database(conn: psycopg.Connection) -> ComponentHealth:
    """Round-trip a query and report the server version."""
    try:
        row = conn.execute("SHOW server_version").fetchone()
        version = row[0] if row else "?"
        return ComponentHealth(
            name="postgres", status=Status.HEALTHY, detail=f"server {version}"
        )
    except psycopg.Error as exc:
        return ComponentHealth(name="postgres", status=Status.UNHEALTHY, detail=str(exc))


def check_trigger_function(
    conn: psycopg.Connection, function_name: str = "generic_table_notify"
) -> ComponentHealth:
    """Verify the generic trigger function is installed."""
    name = f"function:{function_name}"
    try:
        row = conn.execute(
            "SELECT 1 FROM pg_proc WHERE proname = %s", (function_name,)
        ).fetchone()
    except psycopg.Error as exc:
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail=str(exc))
    if row is None:
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail="missing")
    return ComponentHealth(name=name, status=Status.HEALTHY, detail="installed")


def check_table_trigger(conn: psycopg.Connection, table: str) -> ComponentHealth:
    """Verify *table* carries the change trigger."""
    name = f"trigger:{table}"
    relname = table.rsplit(".", 1)[-1]
    try:
        row = conn.execute(
            "SELECT tgenabled FROM pg_trigger t "
            "JOIN pg_class c ON c.oid = t.tgrelid "
            "WHERE c.relname = %s AND t.tgname = %s",
            (relname, trigger_name(table)),
        ).fetchone()
    except psycopg.Error as exc:
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail=str(exc))
    if row is None:
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail="missing")
    if row[0] == "D":
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail="disabled")
    return ComponentHealth(name=name, status=Status.HEALTHY, detail="enabled")


def check_relay_health(config: ListenerConfig) -> RelayHealth:
    """Run every probe for the tables that have handlers configured."""
    try:
        conn = psycopg.connect(config.database.dsn, autocommit=True)
    except psycopg.Error as exc:
        logger.warning("health.connect_failed", error=str(exc))
        return RelayHealth(
            components=[
                ComponentHealth(
                    name="postgres", status=Status.UNHEALTHY, detail=str(exc)
                )
            ]
        )

    with conn:
        components = [check_database(conn), check_trigger_function(conn)]
        for spec in config.handlers:
            if spec.enabled:
                components.append(check_table_trigger(conn, spec.table))
    return RelayHealth(components=components)
