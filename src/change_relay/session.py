"""Subscription session that owns the LISTEN connection.

The session keeps one autocommit psycopg connection subscribed to the shared
notification channel.  Transport failures while waiting for notifications
send it back to ``CONNECTING``, where it retries with exponential backoff
bounded by the minimum and maximum reconnect intervals (10s → 20s → 40s →
60s cap by default).  Events published while the session is reconnecting
are not replayed.

States::

    CONNECTING ──ok──▶ LISTENING ──silence──▶ CHECKING_LIVENESS
        ▲                  │                        │
        └──transport error─┘◀─────────probe ok──────┘
    any ──close()──▶ CLOSED
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from enum import StrEnum
from typing import Any

import psycopg
import structlog
from psycopg import sql
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    stop_never,
    wait_exponential,
)

from change_relay.config.models import SessionConfig
from change_relay.errors import LivenessProbeError, SessionClosed, SessionError

logger = structlog.get_logger()


class SessionState(StrEnum):
    CONNECTING = "connecting"
    LISTENING = "listening"
    CHECKING_LIVENESS = "checking_liveness"
    CLOSED = "closed"


class ListenerEvent(StrEnum):
    """Informational connection events reported through ``on_event``."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    CONNECTION_ATTEMPT_FAILED = "connection_attempt_failed"


EventCallback = Callable[[ListenerEvent, Exception | None], None]


def log_listener_event(event: ListenerEvent, error: Exception | None) -> None:
    """Default ``on_event`` callback: one log record per event."""
    if error is None:
        logger.info("session.event", listener_event=event.value)
    else:
        logger.warning("session.event", listener_event=event.value, error=str(error))


class NotificationSession:
    """A reconnecting LISTEN subscription on a single channel."""

    def __init__(
        self,
        dsn: str,
        config: SessionConfig | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self._dsn = dsn
        self._config = config or SessionConfig()
        self._on_event = on_event or log_listener_event
        self._conn: psycopg.AsyncConnection[Any] | None = None
        self._state = SessionState.CONNECTING
        self._pending: deque[str] = deque()
        self._has_connected = False
        self.reconnects = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def channel(self) -> str:
        return self._config.channel

    @property
    def closed(self) -> bool:
        return self._state == SessionState.CLOSED

    async def connect(self) -> None:
        """Open the connection and subscribe, retrying with backoff.

        Raises :class:`SessionError` once ``max_reconnect_attempts`` (when
        non-zero) is exhausted.
        """
        if self.closed:
            raise SessionClosed("session is closed")
        self._state = SessionState.CONNECTING

        attempts = self._config.max_reconnect_attempts
        retrying = AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(attempts) if attempts > 0 else stop_never,
                self._stop_if_closed,
            ),
            wait=wait_exponential(
                multiplier=self._config.min_reconnect_interval_seconds,
                min=self._config.min_reconnect_interval_seconds,
                max=self._config.max_reconnect_interval_seconds,
            ),
            retry=retry_if_exception_type(psycopg.OperationalError),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._open()
        except psycopg.OperationalError as exc:
            if self.closed:
                raise SessionClosed("session closed while connecting") from exc
            logger.error(
                "session.reconnect_exhausted",
                channel=self.channel,
                max_attempts=attempts,
            )
            msg = f"could not subscribe to channel '{self.channel}': {exc}"
            raise SessionError(msg) from exc

        if self.closed:
            await self._discard_connection()
            raise SessionClosed("session closed while connecting")

        event = (
            ListenerEvent.RECONNECTED if self._has_connected else ListenerEvent.CONNECTED
        )
        self._has_connected = True
        self._state = SessionState.LISTENING
        logger.info("session.listening", channel=self.channel)
        self._on_event(event, None)

    async def receive(self, timeout: float | None = None) -> str | None:
        """Return the next notification payload, or ``None`` on timeout.

        Transport errors while waiting are handled by reconnecting; the wait
        then resumes for whatever is left of *timeout*.
        """
        if self._pending:
            return self._pending.popleft()

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            conn = self._require_connection()
            try:
                # stop_after is a lower bound: one packet may carry several
                async for notify in conn.notifies(timeout=remaining, stop_after=1):
                    if notify.channel == self.channel:
                        self._pending.append(notify.payload)
            except psycopg.OperationalError as exc:
                if self.closed:
                    raise SessionClosed("session is closed") from exc
                await self._reconnect(exc)
                continue
            if not self._pending:
                return None
        return self._pending.popleft()

    async def ping(self) -> None:
        """Round-trip ``SELECT 1`` to detect a silently dead connection.

        Raises :class:`LivenessProbeError` on failure unless
        ``reconnect_on_probe_failure`` is set, in which case the session
        reconnects instead.
        """
        conn = self._require_connection()
        self._state = SessionState.CHECKING_LIVENESS
        try:
            await conn.execute("SELECT 1")
        except psycopg.Error as exc:
            if self.closed:
                raise SessionClosed("session is closed") from exc
            if self._config.reconnect_on_probe_failure:
                logger.warning(
                    "session.probe_failed_reconnecting",
                    channel=self.channel,
                    error=str(exc),
                )
                await self._reconnect(exc)
                return
            logger.error("session.probe_failed", channel=self.channel, error=str(exc))
            msg = f"liveness probe on channel '{self.channel}' failed: {exc}"
            raise LivenessProbeError(msg) from exc
        self._state = SessionState.LISTENING
        logger.debug("session.probe_ok", channel=self.channel)

    async def close(self) -> None:
        """Release the connection.  Safe to call more than once."""
        if self.closed:
            return
        self._state = SessionState.CLOSED
        self._pending.clear()
        await self._discard_connection()
        logger.info("session.closed", channel=self.channel)

    # -- internals ------------------------------------------------------------

    async def _open(self) -> None:
        conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=True)
        try:
            await conn.execute(
                sql.SQL("LISTEN {}").format(sql.Identifier(self.channel))
            )
        except BaseException:
            await conn.close()
            raise
        self._conn = conn

    async def _reconnect(self, error: Exception) -> None:
        logger.warning("session.disconnected", channel=self.channel, error=str(error))
        self._on_event(ListenerEvent.DISCONNECTED, error)
        await self._discard_connection()
        self.reconnects += 1
        await self.connect()

    async def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            with suppress(psycopg.Error):
                await conn.close()

    def _require_connection(self) -> psycopg.AsyncConnection[Any]:
        if self.closed:
            raise SessionClosed("session is closed")
        if self._conn is None:
            raise SessionError("session is not connected")
        return self._conn

    def _stop_if_closed(self, retry_state: RetryCallState) -> bool:
        return self.closed

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "session.connect_failed",
            channel=self.channel,
            attempt=retry_state.attempt_number,
            retry_in_seconds=delay,
            error=str(error),
        )
        self._on_event(
            ListenerEvent.CONNECTION_ATTEMPT_FAILED,
            error if isinstance(error, Exception) else None,
        )
