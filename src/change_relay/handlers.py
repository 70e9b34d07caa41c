"""Example consumers.

``LoggingHandler`` just records each change; ``RowCache`` keeps an in-memory
copy of a table keyed by one column, which is how a config cache or a user
cache is typically kept in sync with its table.
"""

from __future__ import annotations

import json
import threading
from typing import Any

import structlog

from change_relay.errors import HandlerError
from change_relay.events import Operation

logger = structlog.get_logger()


class LoggingHandler:
    """Logs every change it receives."""

    def __init__(self, table: str) -> None:
        self._table = table

    def handle(self, operation: Operation, data: str) -> None:
        logger.info(
            "handler.change", table=self._table, operation=str(operation), data=data
        )


class RowCache:
    """Thread-safe mirror of a table, keyed by ``key_field``.

    INSERT and UPDATE upsert the row, DELETE evicts it.  Rows that are not
    JSON objects or lack the key raise :class:`HandlerError`.
    """

    def __init__(self, table: str = "", key_field: str = "id") -> None:
        self._table = table
        self._key_field = key_field
        self._rows: dict[Any, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def handle(self, operation: Operation, data: str) -> None:
        try:
            row = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = f"row for {self._table or 'table'} is not valid JSON: {exc}"
            raise HandlerError(msg) from exc
        if not isinstance(row, dict) or self._key_field not in row:
            msg = f"row has no '{self._key_field}' field"
            raise HandlerError(msg)

        key = row[self._key_field]
        with self._lock:
            if operation == Operation.DELETE:
                self._rows.pop(key, None)
            else:
                self._rows[key] = row
        logger.debug(
            "handler.cache_updated",
            table=self._table,
            operation=str(operation),
            key=key,
        )

    def get(self, key: Any) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(key)
            return dict(row) if row is not None else None

    def snapshot(self) -> dict[Any, dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._rows.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
