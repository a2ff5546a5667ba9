"""Tests for TrafficEvent parsing and the accessors detectors rely on."""

import json

import pytest

from threatcore.errors import InvalidEvent
from threatcore.events import EntityKey, TrafficEvent, format_timestamp, parse_timestamp


def _event(**overrides):
    """Helper to build an inbound event dict with sane defaults."""
    e = {
        "request_id": "req-1",
        "timestamp": "2024-01-15T10:00:00Z",
        "entity": {"ip": "203.0.113.7"},
        "api_id": "shop",
        "endpoint_id": "search",
        "method": "get",
        "path": "/v1/search",
        "headers": {"User-Agent": "curl/8.4", "X-Request-Source": "edge"},
        "payload_size": 0,
        "status_code": 200,
    }
    e.update(overrides)
    return e


class TestParsing:
    def test_minimal_event(self):
        ev = TrafficEvent.from_dict(_event())
        assert ev.request_id == "req-1"
        assert ev.timestamp == 1705312800.0
        assert ev.method == "GET"
        assert ev.user_id is None

    def test_headers_are_lowercased_and_read_only(self):
        ev = TrafficEvent.from_dict(_event())
        assert ev.header("User-Agent") == "curl/8.4"
        assert "x-request-source" in ev.headers
        with pytest.raises(TypeError):
            ev.headers["x"] = "y"

    def test_query_parameters_are_merged(self):
        ev = TrafficEvent.from_dict(_event(query="q=shoes&page=2", parameters={"page": "3"}))
        assert ev.parameters["q"] == "shoes"
        assert ev.parameters["page"] == "3"

    def test_optional_fields(self):
        ev = TrafficEvent.from_dict(_event(
            response_time_ms=42, geo={"country": "DE"}, content_type="application/json",
            entity={"ip": "1.2.3.4", "user_id": "u1", "session_id": "s1"},
        ))
        assert ev.response_time_ms == 42.0
        assert ev.country == "DE"
        assert ev.session_id == "s1"

    def test_from_json(self):
        ev = TrafficEvent.from_json(json.dumps(_event()).encode())
        assert ev.path == "/v1/search"

    def test_not_json(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_json(b"{nope")


class TestValidation:
    @pytest.mark.parametrize("name", ["request_id", "api_id", "endpoint_id", "method", "path"])
    def test_missing_required_string(self, name):
        e = _event()
        del e[name]
        with pytest.raises(InvalidEvent) as exc:
            TrafficEvent.from_dict(e)
        assert name in exc.value.reason

    def test_missing_entity_ip(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(_event(entity={"user_id": "u1"}))

    def test_bad_timestamp_keeps_request_id(self):
        with pytest.raises(InvalidEvent) as exc:
            TrafficEvent.from_dict(_event(timestamp="yesterday"))
        assert exc.value.request_id == "req-1"

    def test_status_code_out_of_range(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(_event(status_code=700))

    def test_negative_payload(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(_event(payload_size=-1))

    def test_boolean_is_not_an_integer(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(_event(payload_size=True))

    def test_not_an_object(self):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(["a", "list"])


class TestAccessors:
    def test_primary_entity_prefers_user(self):
        ev = TrafficEvent.from_dict(_event(entity={"ip": "1.2.3.4", "user_id": "alice"}))
        assert ev.primary_entity() == EntityKey("user", "alice")
        assert str(ev.primary_entity()) == "user:alice"

    def test_primary_entity_falls_back_to_ip(self):
        ev = TrafficEvent.from_dict(_event())
        assert ev.primary_entity() == EntityKey("ip", "203.0.113.7")

    def test_entity_object(self):
        ev = TrafficEvent.from_dict(_event())
        assert ev.entity() == {"ip": "203.0.113.7", "api_id": "shop", "endpoint_id": "search"}

    def test_detection_targets(self):
        ev = TrafficEvent.from_dict(_event(query="id=5"))
        targets = ev.detection_targets()
        assert targets["user_agent"] == "curl/8.4"
        assert targets["header.x-request-source"] == "edge"
        assert targets["param.id"] == "5"
        assert targets["status_code"] == 200


class TestTimestamps:
    def test_rfc3339_with_offset(self):
        assert parse_timestamp("2024-01-15T11:00:00+01:00") == 1705312800.0

    def test_epoch_number(self):
        assert parse_timestamp(1705312800) == 1705312800.0

    def test_format(self):
        assert format_timestamp(1705312800.25) == "2024-01-15T10:00:00.250Z"

    @pytest.mark.parametrize("value", ["", "   ", "\t\n"])
    def test_blank_string_is_rejected(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)

    @pytest.mark.parametrize("value", [1e18, -1, float("nan"), float("inf"), float("-inf")])
    def test_out_of_range_epoch_is_rejected(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)

    def test_last_supported_second(self):
        assert format_timestamp(parse_timestamp("9999-12-31T23:59:59Z")).startswith("9999-12-31")

    def test_before_epoch_is_rejected(self):
        with pytest.raises(ValueError):
            parse_timestamp("1969-12-31T23:59:59Z")


class TestTimestampValidation:
    @pytest.mark.parametrize("value", ["   ", 1e18, float("nan"), float("inf"), -5])
    def test_unusable_timestamp_is_an_invalid_event(self, value):
        with pytest.raises(InvalidEvent) as exc:
            TrafficEvent.from_dict(_event(timestamp=value))
        assert exc.value.request_id == "req-1"
        assert "timestamp" in exc.value.reason

    def test_nan_literal_in_json(self):
        raw = json.dumps(_event()).replace('"2024-01-15T10:00:00Z"', "NaN")
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_json(raw)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), -1.0])
    def test_unusable_response_time_is_rejected(self, value):
        with pytest.raises(InvalidEvent):
            TrafficEvent.from_dict(_event(response_time_ms=value))
