"""Tests for the feedback HTTP API routing and the feedback topic handler."""

import http.client
import json

import pytest

from threatcore.api import content_length, handle, start_api_server
from threatcore.engine import ThreatEngine
from threatcore.main import handle_feedback_message

SQLI = json.dumps({
    "request_id": "req-1",
    "timestamp": "2024-01-15T10:00:00Z",
    "entity": {"ip": "203.0.113.9"},
    "api_id": "shop",
    "endpoint_id": "search",
    "method": "GET",
    "path": "/v1/search",
    "query": "id=1 UNION SELECT password FROM users",
    "headers": {},
    "payload_size": 0,
    "status_code": 200,
})


def _post(engine, path, payload):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return handle(engine, "POST", path, body)


class TestReadEndpoints:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.verdict = self.engine.process_raw(SQLI)

    def teardown_method(self):
        self.engine.close()

    def test_health(self):
        resp = handle(self.engine, "GET", "/health")
        assert resp.status == 200
        body = json.loads(resp.body)
        assert body["status"] == "ok"
        assert body["stats"]["verdicts"] == 1

    def test_metrics(self):
        resp = handle(self.engine, "GET", "/metrics")
        assert resp.status == 200
        assert b"threatcore_events_total" in resp.body

    def test_get_verdict(self):
        resp = handle(self.engine, "GET", f"/verdicts/{self.verdict.verdict_id}")
        assert resp.status == 200
        assert json.loads(resp.body)["severity"] == "high"

    def test_get_unknown_verdict(self):
        assert handle(self.engine, "GET", "/verdicts/nope").status == 404

    def test_unknown_route_and_method(self):
        assert handle(self.engine, "GET", "/nope").status == 404
        assert handle(self.engine, "DELETE", "/feedback").status == 405


class TestFeedbackEndpoint:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.verdict = self.engine.process_raw(SQLI)
        self.engine.feedback.start()

    def teardown_method(self):
        self.engine.feedback.stop()
        self.engine.close()

    def test_accepted_feedback_is_applied(self):
        resp = _post(self.engine, "/feedback", {
            "verdict_id": self.verdict.verdict_id,
            "false_positive": True,
            "notes": "pentest traffic",
            "submitted_at": "2024-01-15T10:05:00Z",
        })
        assert resp.status == 204
        assert resp.body == b""
        self.engine.feedback.join()
        assert self.engine.signatures.snapshot.get("sqli-union-select").weight == 70.0

    def test_duplicate_post_is_still_accepted(self):
        payload = {"verdict_id": self.verdict.verdict_id, "false_positive": True,
                   "submitted_at": 1705313100}
        assert _post(self.engine, "/feedback", payload).status == 204
        assert _post(self.engine, "/feedback", payload).status == 204
        self.engine.feedback.join()
        assert self.engine.signatures.snapshot.get("sqli-union-select").weight == 70.0

    def test_unknown_verdict(self):
        resp = _post(self.engine, "/feedback", {"verdict_id": "nope", "false_positive": True})
        assert resp.status == 404

    @pytest.mark.parametrize("body", [
        b"{oops",
        b"[1, 2]",
        json.dumps({"false_positive": True}).encode(),
        json.dumps({"verdict_id": "x", "false_positive": "yes"}).encode(),
        json.dumps({"verdict_id": "x", "false_positive": True, "notes": 5}).encode(),
        json.dumps({"verdict_id": "x", "false_positive": True, "submitted_at": "soon"}).encode(),
    ])
    def test_bad_bodies(self, body):
        assert _post(self.engine, "/feedback", body).status == 400


class TestStatusEndpoint:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.verdict = self.engine.process_raw(SQLI)
        self.path = f"/verdicts/{self.verdict.verdict_id}/status"

    def teardown_method(self):
        self.engine.close()

    def test_valid_transition(self):
        resp = _post(self.engine, self.path, {"status": "investigating"})
        assert resp.status == 200
        assert json.loads(resp.body)["status"] == "investigating"

    def test_invalid_transition_conflicts(self):
        assert _post(self.engine, self.path, {"status": "resolved"}).status == 409

    def test_missing_status(self):
        assert _post(self.engine, self.path, {}).status == 400

    def test_unknown_verdict(self):
        assert _post(self.engine, "/verdicts/nope/status", {"status": "resolved"}).status == 404


class TestFeedbackTopic:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.verdict = self.engine.process_raw(SQLI)
        self.engine.feedback.start()

    def teardown_method(self):
        self.engine.feedback.stop()
        self.engine.close()

    def test_valid_message(self):
        raw = json.dumps({"verdict_id": self.verdict.verdict_id, "false_positive": False,
                          "submitted_at": "2024-01-15T10:05:00Z"}).encode()
        assert handle_feedback_message(self.engine, raw) is True
        self.engine.feedback.join()
        assert self.engine.signatures.snapshot.get("sqli-union-select").weight == 90.0
        [record] = self.engine.feedback.records()
        assert record.source == "automated"

    @pytest.mark.parametrize("raw", [
        b"not json",
        b'{"false_positive": true}',
        b'{"verdict_id": "x", "false_positive": "no"}',
        b'{"verdict_id": "nope", "false_positive": true}',
    ])
    def test_rejected_messages(self, raw):
        assert handle_feedback_message(self.engine, raw) is False


class TestContentLength:
    @pytest.mark.parametrize("header,expected", [(None, 0), ("", 0), ("0", 0), ("17", 17)])
    def test_valid(self, header, expected):
        assert content_length(header) == expected

    @pytest.mark.parametrize("header", ["-1", "-4096", "abc", "1.5"])
    def test_invalid(self, header):
        with pytest.raises(ValueError):
            content_length(header)


class TestServer:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.server = start_api_server(self.engine, host="127.0.0.1", port=0)
        self.port = self.server.server_address[1]

    def teardown_method(self):
        self.server.shutdown()
        self.server.server_close()
        self.engine.close()

    def _post(self, headers, body=b""):
        conn = http.client.HTTPConnection("127.0.0.1", self.port, timeout=5)
        try:
            conn.putrequest("POST", "/feedback", skip_accept_encoding=True)
            for name, value in headers.items():
                conn.putheader(name, value)
            conn.endheaders(body)
            resp = conn.getresponse()
            return resp.status, resp.read()
        finally:
            conn.close()

    def test_negative_content_length_is_rejected(self):
        status, body = self._post({"Content-Length": "-1"})
        assert status == 400
        assert "Content-Length" in json.loads(body)["error"]

    def test_malformed_content_length_is_rejected(self):
        status, _ = self._post({"Content-Length": "lots"})
        assert status == 400

    def test_health_over_http(self):
        conn = http.client.HTTPConnection("127.0.0.1", self.port, timeout=5)
        try:
            conn.request("GET", "/health")
            resp = conn.getresponse()
            assert resp.status == 200
            assert json.loads(resp.read())["status"] == "ok"
        finally:
            conn.close()
