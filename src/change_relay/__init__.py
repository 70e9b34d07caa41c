"""Relay PostgreSQL row-change notifications to per-table consumers."""

from change_relay.errors import (
    HandlerError,
    LivenessProbeError,
    MalformedEnvelope,
    RelayError,
    SessionClosed,
    SessionError,
)
from change_relay.events import ChangeEvent, Operation, decode, encode
from change_relay.listener import ChangeListener, DispatchStats
from change_relay.registry import ChangeHandler, HandlerRegistry
from change_relay.session import ListenerEvent, NotificationSession, SessionState

__version__ = "0.1.0"

__all__ = [
    "ChangeEvent",
    "ChangeHandler",
    "ChangeListener",
    "DispatchStats",
    "HandlerError",
    "HandlerRegistry",
    "ListenerEvent",
    "LivenessProbeError",
    "MalformedEnvelope",
    "NotificationSession",
    "Operation",
    "RelayError",
    "SessionClosed",
    "SessionError",
    "SessionState",
    "decode",
    "encode",
]
