"""Producer side: the generic NOTIFY trigger and a test publisher.

One trigger function serves every table.  It serialises ``NEW`` (``OLD`` for
DELETE) with ``row_to_json`` and publishes the envelope on the shared
channel, so adding a table only requires attaching the trigger.
"""

from __future__ import annotations

import psycopg
import structlog
from psycopg import sql

from change_relay.events import ChangeEvent, encode

logger = structlog.get_logger()

_FUNCTION_BODY = """
DECLARE
    payload JSON;
    row_data JSON;
BEGIN
    IF TG_OP = 'DELETE' THEN
        row_data = row_to_json(OLD);
    ELSE
        row_data = row_to_json(NEW);
    END IF;

    payload = json_build_object(
        'table', TG_TABLE_NAME,
        'operation', TG_OP,
        'data', row_data,
        'timestamp', CURRENT_TIMESTAMP
    );

    PERFORM pg_notify({channel}, payload::text);
    RETURN NULL;
END;
"""


def trigger_name(table: str) -> str:
    """Name of the change trigger attached to *table*."""
    return f"{table.rsplit('.', 1)[-1]}_change_trigger"


def _table_identifier(table: str) -> sql.Identifier:
    return sql.Identifier(*table.split("."))


class TriggerManager:
    """Installs and removes the generic change trigger.

    Tables may be given bare (``s_config``) or schema-qualified
    (``public.s_config``).
    """

    def __init__(
        self,
        dsn: str,
        channel: str = "data_changes",
        function_name: str = "generic_table_notify",
    ) -> None:
        self._dsn = dsn
        self._channel = channel
        self._function_name = function_name

    def function_sql(self) -> sql.Composed:
        body = sql.SQL(_FUNCTION_BODY).format(channel=sql.Literal(self._channel))
        return sql.SQL(
            "CREATE OR REPLACE FUNCTION {fn}() RETURNS TRIGGER AS $relay$"
            "{body}$relay$ LANGUAGE plpgsql"
        ).format(fn=sql.Identifier(self._function_name), body=body)

    def attach_sql(self, table: str) -> list[sql.Composed]:
        trigger = sql.Identifier(trigger_name(table))
        target = _table_identifier(table)
        return [
            sql.SQL("DROP TRIGGER IF EXISTS {trigger} ON {table}").format(
                trigger=trigger, table=target
            ),
            sql.SQL(
                "CREATE TRIGGER {trigger} "
                "AFTER INSERT OR UPDATE OR DELETE ON {table} "
                "FOR EACH ROW EXECUTE FUNCTION {fn}()"
            ).format(
                trigger=trigger,
                table=target,
                fn=sql.Identifier(self._function_name),
            ),
        ]

    async def ensure_function(self) -> None:
        """Create or replace the generic trigger function."""
        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            await conn.execute(self.function_sql())
        logger.info(
            "triggers.function_installed",
            function=self._function_name,
            channel=self._channel,
        )

    async def attach(self, table: str) -> None:
        """(Re)create the change trigger on *table*."""
        async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
            async with conn.transaction():
                for statement in self.attach_sql(table):
                    await conn.execute(statement)
        logger.info("triggers.attached", table=table, trigger=trigger_name(table))

    async def detach(self, table: str) -> None:
        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            await conn.execute(
                sql.SQL("DROP TRIGGER IF EXISTS {trigger} ON {table}").format(
                    trigger=sql.Identifier(trigger_name(table)),
                    table=_table_identifier(table),
                )
            )
        logger.info("triggers.detached", table=table)

    async def drop_function(self) -> None:
        """Drop the trigger function (fails while triggers still use it)."""
        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            await conn.execute(
                sql.SQL("DROP FUNCTION IF EXISTS {fn}()").format(
                    fn=sql.Identifier(self._function_name)
                )
            )
        logger.info("triggers.function_dropped", function=self._function_name)


async def publish(dsn: str, event: ChangeEvent, channel: str = "data_changes") -> str:
    """Send *event* on *channel* with ``pg_notify``; returns the payload sent."""
    payload = encode(event)
    async with await psycopg.AsyncConnection.connect(dsn, autocommit=True) as conn:
        await conn.execute("SELECT pg_notify(%s, %s)", (channel, payload))
    logger.info(
        "triggers.published",
        channel=channel,
        table=event.table,
        operation=event.operation.value,
    )
    return payload
