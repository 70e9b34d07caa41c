"""Protocol conformance tests: concrete classes satisfy the runtime protocols."""

from __future__ import annotations

from change_relay.config.models import SessionConfig
from change_relay.handlers import LoggingHandler, RowCache
from change_relay.listener import NotificationSource
from change_relay.registry import ChangeHandler
from change_relay.session import NotificationSession


class TestProtocolConformance:
    def test_notification_session_satisfies_notification_source(self):
        session = NotificationSession("dbname=data_listener", SessionConfig())
        assert isinstance(session, NotificationSource)

    def test_logging_handler_satisfies_change_handler(self):
        assert isinstance(LoggingHandler("s_user"), ChangeHandler)

    def test_row_cache_satisfies_change_handler(self):
        assert isinstance(RowCache("s_config", key_field="config_key"), ChangeHandler)
