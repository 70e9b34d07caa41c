"""Table-name → consumer routing table."""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

import structlog

from change_relay.events import Operation

logger = structlog.get_logger()


@runtime_checkable
class ChangeHandler(Protocol):
    """Capability every table consumer must provide.

    Return normally on success; raise (ideally ``HandlerError``) to report a
    failure.  ``data`` is the raw JSON text of the row, decoding it is the
    consumer's job.  Consumers holding mutable state synchronise it
    themselves.
    """

    def handle(self, operation: Operation, data: str) -> None | Awaitable[None]:
        """Apply one change for the consumer's table."""
        ...


HandlerFunc = Callable[[Operation, str], Awaitable[None] | None]
Handler = ChangeHandler | HandlerFunc


class HandlerRegistry:
    """Flat, exact-match mapping from table name to consumer.

    Reads and writes are guarded by a lock, so handlers can be registered
    while the dispatch loop is already running.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, table: str, handler: Handler) -> None:
        """Associate *handler* with *table*, replacing any previous one."""
        with self._lock:
            replaced = table in self._handlers
            self._handlers[table] = handler
        logger.info("registry.handler_registered", table=table, replaced=replaced)

    def unregister(self, table: str) -> Handler | None:
        with self._lock:
            return self._handlers.pop(table, None)

    def resolve(self, table: str) -> Handler | None:
        """Return the consumer for *table*, or ``None`` if there is none."""
        with self._lock:
            return self._handlers.get(table)

    def tables(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, table: object) -> bool:
        with self._lock:
            return table in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


def bound_handle(handler: Handler) -> HandlerFunc:
    """Return the callable to invoke for *handler*.

    Objects implementing :class:`ChangeHandler` are called through their
    ``handle`` method; plain functions and closures are called directly.
    """
    if isinstance(handler, ChangeHandler):
        return handler.handle
    return handler
