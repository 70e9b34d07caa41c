"""Exception hierarchy shared by the relay components."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by change_relay."""


class MalformedEnvelope(RelayError):
    """A notification payload could not be decoded into a ChangeEvent."""

    def __init__(self, reason: str, payload: str | bytes | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.payload = payload


class HandlerError(RelayError):
    """A consumer reports that it could not apply a change."""


class SessionError(RelayError):
    """The notification session could not (re)establish its subscription."""


class SessionClosed(SessionError):
    """An operation was attempted on a session that has been closed."""


class LivenessProbeError(SessionError):
    """The liveness round-trip failed; the listener cannot continue."""
