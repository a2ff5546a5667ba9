"""Canonical traffic event handed to the engine by the normalizer.

The ingestion pipeline owns wire-format parsing; this module only validates
the normalized JSON object and freezes it into a ``TrafficEvent``.  The
engine reads events, never mutates them.

Inbound shape (one JSON object per event):

    {"request_id": "...", "timestamp": "2024-01-15T10:00:00Z",
     "entity": {"ip": "...", "user_id": "...", "session_id": "..."},
     "api_id": "...", "endpoint_id": "...", "method": "GET", "path": "/v1/x",
     "headers": {"User-Agent": "..."}, "payload_size": 512, "status_code": 200}

Optional fields the normalizer fills in when it has them: ``query``,
``body`` (payload sample), ``parameters``, ``content_type``,
``response_time_ms`` and ``geo.country``.
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import parse_qsl

from threatcore.errors import InvalidEvent

ENTITY_TYPES = ("ip", "user", "session", "api", "endpoint")

# Accepted epoch range: 1970-01-01 through 9999-12-31T23:59:59Z.
_MAX_TIMESTAMP = 253_402_300_799.0

_REQUIRED_STRINGS = ("request_id", "api_id", "endpoint_id", "method", "path")


@dataclass(frozen=True)
class EntityKey:
    """Subject being profiled, e.g. ``EntityKey("ip", "10.0.0.7")``."""

    entity_type: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


@dataclass(frozen=True)
class TrafficEvent:
    request_id: str
    timestamp: float
    ip: str
    api_id: str
    endpoint_id: str
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict, hash=False)
    payload_size: int = 0
    status_code: int = 0
    user_id: str | None = None
    session_id: str | None = None
    query: str = ""
    body: str = ""
    parameters: Mapping[str, str] = field(default_factory=dict, hash=False)
    content_type: str = ""
    response_time_ms: float | None = None
    country: str | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, raw: bytes | str) -> "TrafficEvent":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidEvent(f"not valid JSON: {e}") from None
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> "TrafficEvent":
        """Validate a normalized event object. Raises InvalidEvent."""
        if not isinstance(data, dict):
            raise InvalidEvent("event must be a JSON object")

        request_id = data.get("request_id")
        for name in _REQUIRED_STRINGS:
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise InvalidEvent(f"missing or empty '{name}'", request_id)

        entity = data.get("entity")
        if not isinstance(entity, dict):
            raise InvalidEvent("missing 'entity' object", request_id)
        ip = entity.get("ip")
        if not isinstance(ip, str) or not ip:
            raise InvalidEvent("missing 'entity.ip'", request_id)
        user_id = _optional_str(entity, "user_id", request_id)
        session_id = _optional_str(entity, "session_id", request_id)

        try:
            timestamp = parse_timestamp(data.get("timestamp"))
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidEvent(f"bad 'timestamp': {e}", request_id) from None

        headers = data.get("headers", {})
        if not isinstance(headers, dict):
            raise InvalidEvent("'headers' must be an object", request_id)
        headers = {str(k).lower(): str(v) for k, v in headers.items()}

        payload_size = _int_field(data, "payload_size", request_id, default=0)
        if payload_size < 0:
            raise InvalidEvent("'payload_size' must be >= 0", request_id)
        status_code = _int_field(data, "status_code", request_id)
        if not 100 <= status_code <= 599:
            raise InvalidEvent(f"'status_code' out of range: {status_code}", request_id)

        query = data.get("query") or ""
        body = data.get("body") or ""
        if not isinstance(query, str) or not isinstance(body, str):
            raise InvalidEvent("'query' and 'body' must be strings", request_id)

        parameters = data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise InvalidEvent("'parameters' must be an object", request_id)
        merged_params = dict(parse_qsl(query, keep_blank_values=True))
        merged_params.update({str(k): str(v) for k, v in parameters.items()})

        response_time = data.get("response_time_ms")
        if response_time is not None:
            if isinstance(response_time, bool) or not isinstance(response_time, (int, float)):
                raise InvalidEvent("'response_time_ms' must be a number", request_id)
            response_time = float(response_time)
            if not math.isfinite(response_time) or response_time < 0:
                raise InvalidEvent("'response_time_ms' must be a finite number >= 0", request_id)

        geo = data.get("geo") or {}
        country = geo.get("country") if isinstance(geo, dict) else None

        return cls(
            request_id=request_id,
            timestamp=timestamp,
            ip=ip,
            api_id=data["api_id"],
            endpoint_id=data["endpoint_id"],
            method=data["method"].upper(),
            path=data["path"],
            headers=MappingProxyType(headers),
            payload_size=payload_size,
            status_code=status_code,
            user_id=user_id,
            session_id=session_id,
            query=query,
            body=body,
            parameters=MappingProxyType(merged_params),
            content_type=str(data.get("content_type") or headers.get("content-type", "")),
            response_time_ms=response_time,
            country=country if isinstance(country, str) and country else None,
        )

    # ------------------------------------------------------------------
    # Accessors used by the detectors
    # ------------------------------------------------------------------

    def primary_entity(self) -> EntityKey:
        """Profiling key: the authenticated user when known, else the source IP."""
        if self.user_id:
            return EntityKey("user", self.user_id)
        return EntityKey("ip", self.ip)

    def entity(self) -> dict:
        """The ``entity`` object copied onto outbound verdicts."""
        out = {"ip": self.ip}
        if self.user_id:
            out["user_id"] = self.user_id
        if self.session_id:
            out["session_id"] = self.session_id
        out["api_id"] = self.api_id
        out["endpoint_id"] = self.endpoint_id
        return out

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def detection_targets(self) -> dict:
        """Flatten the event into the field namespace signatures match against."""
        targets = {
            "method": self.method,
            "path": self.path,
            "query": self.query,
            "body": self.body,
            "content_type": self.content_type,
            "status_code": self.status_code,
            "payload_size": self.payload_size,
            "api_id": self.api_id,
            "endpoint_id": self.endpoint_id,
            "ip": self.ip,
            "user_agent": self.header("user-agent"),
        }
        for name, value in self.headers.items():
            targets[f"header.{name}"] = value
        for name, value in self.parameters.items():
            targets[f"param.{name}"] = value
        return targets


def parse_timestamp(value: Any) -> float:
    """RFC3339 string or epoch number -> epoch seconds (UTC)."""
    if isinstance(value, bool):
        raise TypeError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        ts = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        ts = dt.timestamp()
    else:
        raise TypeError("timestamp must be an RFC3339 string or a number")
    if not math.isfinite(ts) or not 0 <= ts <= _MAX_TIMESTAMP:
        raise ValueError(f"timestamp out of range: {value!r}")
    return ts


def format_timestamp(ts: float) -> str:
    """Epoch seconds -> RFC3339 in UTC with a ``Z`` suffix."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _optional_str(obj: dict, name: str, request_id) -> str | None:
    value = obj.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidEvent(f"'entity.{name}' must be a string", request_id)
    return value


def _int_field(data: dict, name: str, request_id, default: int | None = None) -> int:
    value = data.get(name, default)
    if value is None:
        raise InvalidEvent(f"missing '{name}'", request_id)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEvent(f"'{name}' must be an integer", request_id)
    return value
