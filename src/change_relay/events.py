"""Change-event envelope codec.

The producer trigger publishes one JSON document per changed row::

    {"table": "s_config", "operation": "UPDATE",
     "data": {...row...}, "timestamp": "2024-01-01T12:00:00.123456+00:00"}

``decode`` turns that text into an immutable :class:`ChangeEvent`.  The
``data`` member is kept as the exact JSON text it had inside the envelope so
consumers can parse it into whatever shape their table needs.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from json.decoder import scanstring
from typing import Any

from change_relay.errors import MalformedEnvelope

REQUIRED_FIELDS = ("table", "operation", "data", "timestamp")

_DECODER = json.JSONDecoder()
_WS = re.compile(r"[ \t\n\r]*")


class Operation(StrEnum):
    """Row-level operations emitted by the trigger (``TG_OP``)."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One decoded row change.

    ``data`` is the row document as raw JSON text.  For ``DELETE`` it is the
    row as it existed before removal.
    """

    table: str
    operation: Operation
    data: str
    timestamp: datetime

    def row(self) -> Any:
        """Parse ``data`` into Python objects."""
        return json.loads(self.data)

    @classmethod
    def from_row(
        cls,
        table: str,
        operation: Operation | str,
        row: Any,
        timestamp: datetime | None = None,
    ) -> ChangeEvent:
        """Build an event from a Python row (used for publishing and tests)."""
        return cls(
            table=table,
            operation=Operation(operation),
            data=json.dumps(row, default=str),
            timestamp=timestamp or datetime.now(tz=UTC),
        )

    def __str__(self) -> str:
        return f"ChangeEvent({self.operation} on {self.table} at {self.timestamp})"


def _skip_ws(text: str, idx: int) -> int:
    match = _WS.match(text, idx)
    assert match is not None
    return match.end()


def _object_members(text: str) -> dict[str, tuple[Any, str]]:
    """Parse a top-level JSON object, keeping each value's source slice.

    Returns ``{key: (value, raw_text)}``.  Duplicate keys resolve to the last
    occurrence, matching :func:`json.loads`.
    """
    idx = _skip_ws(text, 0)
    if text[idx : idx + 1] != "{":
        raise MalformedEnvelope("envelope is not a JSON object", text)
    idx = _skip_ws(text, idx + 1)

    members: dict[str, tuple[Any, str]] = {}
    if text[idx : idx + 1] == "}":
        end = idx + 1
    else:
        while True:
            if text[idx : idx + 1] != '"':
                raise MalformedEnvelope(f"expected member name at char {idx}", text)
            key, idx = scanstring(text, idx + 1)
            idx = _skip_ws(text, idx)
            if text[idx : idx + 1] != ":":
                raise MalformedEnvelope(f"expected ':' at char {idx}", text)
            idx = _skip_ws(text, idx + 1)
            value, value_end = _DECODER.raw_decode(text, idx)
            members[key] = (value, text[idx:value_end])
            idx = _skip_ws(text, value_end)
            sep = text[idx : idx + 1]
            if sep == ",":
                idx = _skip_ws(text, idx + 1)
                continue
            if sep == "}":
                end = idx + 1
                break
            raise MalformedEnvelope(f"expected ',' or '}}' at char {idx}", text)

    if _skip_ws(text, end) != len(text):
        raise MalformedEnvelope("trailing data after envelope", text)
    return members


def _parse_timestamp(value: Any, payload: str) -> datetime:
    if not isinstance(value, str):
        raise MalformedEnvelope("timestamp must be a string", payload)
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise MalformedEnvelope(f"invalid timestamp {value!r}", payload) from exc


def decode(raw: str | bytes) -> ChangeEvent:
    """Decode a notification payload into a :class:`ChangeEvent`.

    Raises :class:`MalformedEnvelope` if the payload is not a JSON object,
    lacks a required field, or carries an invalid table, operation or
    timestamp.  Nothing is returned on failure.
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEnvelope("payload is not valid UTF-8", raw) from exc
    else:
        text = raw

    try:
        members = _object_members(text)
    except ValueError as exc:
        # json.JSONDecodeError from scanstring/raw_decode
        raise MalformedEnvelope(f"invalid JSON: {exc}", text) from exc
    except RecursionError as exc:
        raise MalformedEnvelope("envelope nested too deeply", text) from exc

    missing = [name for name in REQUIRED_FIELDS if name not in members]
    if missing:
        raise MalformedEnvelope(f"missing field(s): {', '.join(missing)}", text)

    table = members["table"][0]
    if not isinstance(table, str) or not table:
        raise MalformedEnvelope("table must be a non-empty string", text)

    op = members["operation"][0]
    try:
        operation = Operation(op)
    except ValueError as exc:
        raise MalformedEnvelope(f"unknown operation {op!r}", text) from exc

    return ChangeEvent(
        table=table,
        operation=operation,
        data=members["data"][1],
        timestamp=_parse_timestamp(members["timestamp"][0], text),
    )


def encode(event: ChangeEvent) -> str:
    """Serialize an event into the wire envelope, splicing ``data`` verbatim."""
    return (
        f'{{"table": {json.dumps(event.table)}, '
        f'"operation": {json.dumps(event.operation.value)}, '
        f'"data": {event.data}, '
        f'"timestamp": {json.dumps(event.timestamp.isoformat())}}}'
    )
