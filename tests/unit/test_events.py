"""Unit tests for the change-event envelope codec."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from change_relay.errors import MalformedEnvelope
from change_relay.events import ChangeEvent, Operation, decode, encode

S_CONFIG_PAYLOAD = (
    '{"table":"s_config","operation":"UPDATE",'
    '"data":{"id":1,"config_key":"debug_mode","config_value":"true"},'
    '"timestamp":"2024-01-01T12:00:00Z"}'
)


class TestDecode:
    def test_decodes_reference_payload(self):
        event = decode(S_CONFIG_PAYLOAD)
        assert event.table == "s_config"
        assert event.operation is Operation.UPDATE
        assert event.row() == {
            "id": 1,
            "config_key": "debug_mode",
            "config_value": "true",
        }
        assert event.timestamp == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def test_data_is_preserved_verbatim(self):
        raw_row = '{ "id" : 1,\n  "price": 1.50, "tags": ["a",  "b"] }'
        payload = (
            '{"table": "s_product", "operation": "INSERT", '
            f'"data": {raw_row}, "timestamp": "2024-01-01T12:00:00+00:00"}}'
        )
        event = decode(payload)
        assert event.data == raw_row
        assert event.row()["price"] == 1.5

    def test_accepts_postgres_timestamp_format(self):
        payload = json.dumps(
            {
                "table": "s_user",
                "operation": "DELETE",
                "data": {"id": 7},
                "timestamp": "2024-03-05T08:09:10.123456+08:00",
            }
        )
        event = decode(payload)
        assert event.timestamp == datetime(
            2024, 3, 5, 8, 9, 10, 123456, tzinfo=timezone(timedelta(hours=8))
        )

    def test_accepts_bytes(self):
        event = decode(S_CONFIG_PAYLOAD.encode())
        assert event.table == "s_config"

    def test_unicode_in_row_is_kept(self):
        payload = json.dumps(
            {
                "table": "s_config",
                "operation": "INSERT",
                "data": {"description": "应用名称"},
                "timestamp": "2024-01-01T12:00:00Z",
            },
            ensure_ascii=False,
        )
        assert decode(payload).row() == {"description": "应用名称"}

    def test_null_data_is_kept_as_document(self):
        payload = (
            '{"table":"t","operation":"DELETE","data":null,'
            '"timestamp":"2024-01-01T12:00:00Z"}'
        )
        assert decode(payload).data == "null"

    def test_extra_fields_are_ignored(self):
        doc = json.loads(S_CONFIG_PAYLOAD)
        doc["schema"] = "public"
        assert decode(json.dumps(doc)).table == "s_config"

    def test_duplicate_keys_last_wins(self):
        payload = (
            '{"table":"a","table":"b","operation":"INSERT","data":{},'
            '"timestamp":"2024-01-01T12:00:00Z"}'
        )
        assert decode(payload).table == "b"


class TestDecodeRejects:
    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "not json",
            "[1, 2, 3]",
            '"just a string"',
            '{"table": "t",',
            '{"table" "t"}',
            S_CONFIG_PAYLOAD + " trailing",
            S_CONFIG_PAYLOAD + "{}",
        ],
    )
    def test_invalid_json(self, payload: str):
        with pytest.raises(MalformedEnvelope):
            decode(payload)

    @pytest.mark.parametrize("field", ["table", "operation", "data", "timestamp"])
    def test_missing_field(self, field: str):
        doc = json.loads(S_CONFIG_PAYLOAD)
        del doc[field]
        with pytest.raises(MalformedEnvelope, match=field):
            decode(json.dumps(doc))

    def test_unknown_operation(self):
        doc = json.loads(S_CONFIG_PAYLOAD)
        doc["operation"] = "TRUNCATE"
        with pytest.raises(MalformedEnvelope, match="TRUNCATE"):
            decode(json.dumps(doc))

    def test_lowercase_operation_is_rejected(self):
        doc = json.loads(S_CONFIG_PAYLOAD)
        doc["operation"] = "update"
        with pytest.raises(MalformedEnvelope):
            decode(json.dumps(doc))

    @pytest.mark.parametrize("table", ["", 42, None, ["s_config"]])
    def test_invalid_table(self, table: object):
        doc = json.loads(S_CONFIG_PAYLOAD)
        doc["table"] = table
        with pytest.raises(MalformedEnvelope, match="table"):
            decode(json.dumps(doc))

    @pytest.mark.parametrize("timestamp", ["yesterday", 1704110400, None])
    def test_invalid_timestamp(self, timestamp: object):
        doc = json.loads(S_CONFIG_PAYLOAD)
        doc["timestamp"] = timestamp
        with pytest.raises(MalformedEnvelope, match="timestamp"):
            decode(json.dumps(doc))

    def test_invalid_utf8(self):
        with pytest.raises(MalformedEnvelope, match="UTF-8"):
            decode(b"\xff\xfe{}")

    def test_deeply_nested_data(self):
        depth = 200_000
        payload = (
            '{"table":"s_config","operation":"UPDATE","data":'
            + "[" * depth
            + "]" * depth
            + ',"timestamp":"2024-01-01T12:00:00Z"}'
        )
        with pytest.raises(MalformedEnvelope, match="nested"):
            decode(payload)

    def test_error_carries_payload(self):
        with pytest.raises(MalformedEnvelope) as info:
            decode("nope")
        assert info.value.payload == "nope"


class TestEncode:
    def test_round_trip(self):
        event = ChangeEvent.from_row(
            "s_user",
            Operation.INSERT,
            {"id": 3, "username": "alice", "email": "a@example.com"},
            timestamp=datetime(2024, 6, 1, 9, 30, tzinfo=UTC),
        )
        assert decode(encode(event)) == event

    def test_round_trip_keeps_raw_data(self):
        event = decode(S_CONFIG_PAYLOAD)
        again = decode(encode(event))
        assert again == event
        assert again.data == '{"id":1,"config_key":"debug_mode","config_value":"true"}'

    def test_encoded_envelope_has_exactly_four_fields(self):
        event = decode(S_CONFIG_PAYLOAD)
        assert set(json.loads(encode(event))) == {
            "table",
            "operation",
            "data",
            "timestamp",
        }

    def test_table_name_is_escaped(self):
        event = ChangeEvent.from_row(
            'odd"name', "DELETE", {}, timestamp=datetime(2024, 1, 1, tzinfo=UTC)
        )
        assert decode(encode(event)).table == 'odd"name'


class TestChangeEvent:
    def test_is_immutable(self):
        event = decode(S_CONFIG_PAYLOAD)
        with pytest.raises(AttributeError):
            event.table = "other"  # type: ignore[misc]

    def test_from_row_accepts_string_operation(self):
        event = ChangeEvent.from_row("t", "DELETE", {"id": 1})
        assert event.operation is Operation.DELETE
        assert event.timestamp.tzinfo is not None

    def test_str(self):
        assert "UPDATE on s_config" in str(decode(S_CONFIG_PAYLOAD))
