"""Async HTTP probe endpoint for the listener process.

Built on ``asyncio.start_server``; serves ``/healthz`` (process alive) and
``/readyz`` (listener subscribed and not failed).
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import structlog

logger = structlog.get_logger()

ReadinessCheck = Callable[[], Awaitable[dict[str, Any]]]

_REASONS = {
    200: "OK",
    404: "Not Found",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class HealthServer:
    """Answers liveness/readiness probes.

    Parameters
    ----------
    port:
        TCP port to bind; ``0`` picks a free one (see :attr:`port`).
    readiness_check:
        Async callable returning the listener's health dict.  Readiness is
        503 when any nested entry has ``"status"`` of ``"error"`` or
        ``"stopped"``.
    """

    def __init__(
        self,
        port: int,
        readiness_check: ReadinessCheck,
        host: str = "0.0.0.0",  # noqa: S104
    ) -> None:
        self._host = host
        self._port = port
        self._readiness_check = readiness_check
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle, host=self._host, port=self._port
        )
        logger.info("health.server_started", host=self._host, port=self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("health.server_stopped")

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            path = _parse_path(request_line)
            if path == "/healthz":
                await _respond(writer, 200, {"status": "ok"})
            elif path == "/readyz":
                health = await self._readiness_check()
                status = 503 if _not_ready(health) else 200
                await _respond(writer, status, health)
            else:
                await _respond(writer, 404, {"error": "not found"})
        except Exception:
            logger.debug("health.request_error", exc_info=True)
            with suppress(Exception):
                await _respond(writer, 500, {"error": "internal server error"})
        finally:
            with suppress(Exception):
                writer.close()
                await writer.wait_closed()


def _not_ready(health: dict[str, Any]) -> bool:
    for value in health.values():
        if isinstance(value, dict) and value.get("status") in ("error", "stopped"):
            return True
    return False


def _parse_path(request_line: bytes) -> str:
    parts = request_line.decode("utf-8", errors="replace").strip().split()
    return parts[1] if len(parts) >= 2 else ""


async def _respond(writer: asyncio.StreamWriter, status: int, body: dict[str, Any]) -> None:
    payload = json.dumps(body, default=str).encode()
    header = (
        f"HTTP/1.1 {status} {_REASONS.get(status, 'Unknown')}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
    )
    writer.write(header.encode() + payload)
    await writer.drain()
