"""Dispatch loop: session → codec → registry → consumer.

:class:`ChangeListener` runs one cooperative loop per process.  Every session
call is raced against ``close()``; a consumer call is not.  Each turn waits
for the next notification, bounded by the liveness window.  A payload is
decoded and routed to the consumer registered for its table; a silent window
triggers one liveness probe.  Malformed payloads, unknown tables and consumer
failures are absorbed; only a failed probe (or an exhausted reconnect)
ends ``start()`` with an exception.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Coroutine
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

import structlog

from change_relay.config.models import ListenerConfig
from change_relay.errors import MalformedEnvelope, SessionClosed, SessionError
from change_relay.events import decode
from change_relay.registry import Handler, HandlerRegistry, bound_handle
from change_relay.session import NotificationSession

logger = structlog.get_logger()

_LOG_PAYLOAD_CHARS = 512

_T = TypeVar("_T")

# Returned by _unless_stopped when close() wins the race.
_STOPPED = object()


@runtime_checkable
class NotificationSource(Protocol):
    """What the dispatch loop needs from a subscription session."""

    @property
    def closed(self) -> bool: ...

    @property
    def channel(self) -> str: ...

    async def connect(self) -> None: ...

    async def receive(self, timeout: float | None = None) -> str | None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class DispatchStats:
    """Runtime counters, exposed through ``health()``."""

    received: int = 0
    dispatched: int = 0
    skipped: int = 0
    malformed: int = 0
    handler_errors: int = 0
    probes: int = 0
    started_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data


class ChangeListener:
    """Routes change notifications from one channel to per-table consumers."""

    def __init__(
        self,
        config: ListenerConfig,
        registry: HandlerRegistry | None = None,
        session: NotificationSource | None = None,
    ) -> None:
        self._config = config
        self._registry = registry if registry is not None else HandlerRegistry()
        self._session: NotificationSource = session or NotificationSession(
            config.database.dsn, config.session
        )
        self._stopping = asyncio.Event()
        self._running = False
        self._error: BaseException | None = None
        self.stats = DispatchStats()

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(self, table: str, handler: Handler) -> None:
        """Route events for *table* to *handler* (last registration wins)."""
        self._registry.register(table, handler)

    async def start(self) -> None:
        """Connect and dispatch until ``close()`` or a fatal error.

        Raises :class:`~change_relay.errors.LivenessProbeError` when a probe
        fails, or :class:`~change_relay.errors.SessionError` when the
        reconnect policy gives up.  The session is closed on every exit path.
        """
        if self._running:
            msg = "listener is already running"
            raise RuntimeError(msg)
        self._running = True
        self._error = None
        self.stats.started_at = datetime.now(tz=UTC)
        try:
            if await self._unless_stopped(self._session.connect()) is not _STOPPED:
                logger.info(
                    "listener.started",
                    listener_id=self._config.listener_id,
                    channel=self._session.channel,
                    tables=self._registry.tables(),
                )
                await self._run()
        except SessionClosed:
            if not self._stopping.is_set():
                raise
        except SessionError as exc:
            self._error = exc
            logger.error(
                "listener.fatal",
                listener_id=self._config.listener_id,
                error=str(exc),
            )
            raise
        finally:
            self._running = False
            await self._session.close()
            logger.info(
                "listener.stopped",
                listener_id=self._config.listener_id,
                **self.stats.as_dict(),
            )

    def run(self) -> None:
        """Blocking wrapper around :meth:`start`."""
        asyncio.run(self.start())

    async def close(self) -> None:
        """Stop the loop and release the connection.

        A consumer call already in progress is allowed to finish; ``start()``
        returns right after it.
        """
        self._stopping.set()
        if not self._running:
            await self._session.close()

    async def _unless_stopped(self, coro: Coroutine[Any, Any, _T]) -> _T | object:
        """Await *coro* unless ``close()`` is called first.

        Returns ``_STOPPED`` (after cancelling *coro*) when the stop event
        fires before the operation completes.
        """
        if self._stopping.is_set():
            coro.close()
            return _STOPPED
        op = asyncio.ensure_future(coro)
        stop_wait = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait({op, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not op.done():
                op.cancel()
            await asyncio.gather(stop_wait, op, return_exceptions=True)
        if op.cancelled():
            return _STOPPED
        return op.result()

    async def _run(self) -> None:
        window = self._config.session.liveness_interval_seconds
        while not self._stopping.is_set():
            payload = await self._unless_stopped(self._session.receive(timeout=window))
            if payload is _STOPPED:
                break
            if payload is None:
                self.stats.probes += 1
                logger.debug("listener.liveness_probe", window_seconds=window)
                if await self._unless_stopped(self._session.ping()) is _STOPPED:
                    break
                continue
            await self.dispatch(payload)  # type: ignore[arg-type]

    async def dispatch(self, payload: str) -> bool:
        """Decode one payload and hand it to its consumer.

        Returns True when a consumer handled the event.  Never raises for
        malformed payloads, unknown tables or consumer failures.
        """
        self.stats.received += 1
        try:
            event = decode(payload)
        except MalformedEnvelope as exc:
            self.stats.malformed += 1
            logger.warning(
                "listener.malformed_envelope",
                reason=exc.reason,
                payload=payload[:_LOG_PAYLOAD_CHARS],
            )
            return False

        handler = self._registry.resolve(event.table)
        if handler is None:
            self.stats.skipped += 1
            logger.debug("listener.no_handler", table=event.table)
            return False

        try:
            result = bound_handle(handler)(event.operation, event.data)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.stats.handler_errors += 1
            logger.error(
                "listener.handler_failed",
                table=event.table,
                operation=event.operation.value,
                error=str(exc),
                exc_info=True,
            )
            return False

        self.stats.dispatched += 1
        logger.debug(
            "listener.dispatched",
            table=event.table,
            operation=event.operation.value,
            timestamp=event.timestamp.isoformat(),
        )
        return True

    async def health(self) -> dict[str, Any]:
        """Readiness payload for the HTTP health server."""
        if self._error is not None:
            session: dict[str, Any] = {"status": "error", "error": str(self._error)}
        elif self._running and not self._session.closed:
            session = {"status": "running"}
        else:
            session = {"status": "stopped"}
        session["channel"] = self._session.channel
        state = getattr(self._session, "state", None)
        if state is not None:
            session["state"] = str(state)
        return {
            "listener_id": self._config.listener_id,
            "session": session,
            "tables": self._registry.tables(),
            "stats": self.stats.as_dict(),
        }
