"""Feedback HTTP API.

Endpoints:
- POST /feedback                {verdict_id, false_positive, notes, submitted_at?}
                                -> 204, 400 (bad body), 404 (unknown verdict)
- GET  /health                  -> liveness plus engine counters
- GET  /metrics                 -> Prometheus exposition
- GET  /verdicts/<id>           -> stored verdict, 404 if unknown
- POST /verdicts/<id>/status    {status} -> 200, 400, 404, 409 (invalid transition)

Routing lives in ``handle`` so it can be exercised without a socket; the
``BaseHTTPRequestHandler`` subclass only moves bytes.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from threatcore.errors import InvalidTransition, UnknownVerdict
from threatcore.events import parse_timestamp

logger = logging.getLogger(__name__)

_MAX_BODY = 64 * 1024


class Response:
    __slots__ = ("status", "body", "content_type")

    def __init__(self, status: int, body: bytes = b"", content_type: str = "application/json"):
        self.status = status
        self.body = body
        self.content_type = content_type

    @classmethod
    def json(cls, status: int, data) -> "Response":
        return cls(status, json.dumps(data).encode("utf-8"))

    @classmethod
    def error(cls, status: int, message: str) -> "Response":
        return cls.json(status, {"error": message})


def handle(engine, method: str, path: str, body: bytes = b"") -> Response:
    path = path.split("?", 1)[0].rstrip("/") or "/"
    parts = path.strip("/").split("/")

    if method == "GET":
        if path == "/health":
            return Response.json(200, {
                "status": "ok",
                "rule_set_version": engine.signatures.snapshot.version,
                "stats": dict(engine.stats),
            })
        if path == "/metrics":
            return Response(200, generate_latest(), CONTENT_TYPE_LATEST)
        if len(parts) == 2 and parts[0] == "verdicts":
            return _get_verdict(engine, parts[1])
        return Response.error(404, "not found")

    if method == "POST":
        try:
            payload = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Response.error(400, "body must be JSON")
        if not isinstance(payload, dict):
            return Response.error(400, "body must be a JSON object")
        if path == "/feedback":
            return _post_feedback(engine, payload)
        if len(parts) == 3 and parts[0] == "verdicts" and parts[2] == "status":
            return _post_status(engine, parts[1], payload)
        return Response.error(404, "not found")

    return Response.error(405, "method not allowed")


def _get_verdict(engine, verdict_id: str) -> Response:
    try:
        verdict = engine.verdicts.get(verdict_id)
    except UnknownVerdict:
        return Response.error(404, f"unknown verdict: {verdict_id}")
    return Response.json(200, verdict.to_dict())


def _post_feedback(engine, payload: dict) -> Response:
    verdict_id = payload.get("verdict_id")
    false_positive = payload.get("false_positive")
    notes = payload.get("notes", "")
    if not isinstance(verdict_id, str) or not verdict_id:
        return Response.error(400, "'verdict_id' is required")
    if not isinstance(false_positive, bool):
        return Response.error(400, "'false_positive' must be a boolean")
    if not isinstance(notes, str):
        return Response.error(400, "'notes' must be a string")

    submitted_at = payload.get("submitted_at")
    if submitted_at is not None:
        try:
            submitted_at = parse_timestamp(submitted_at)
        except (TypeError, ValueError):
            return Response.error(400, "'submitted_at' must be RFC3339 or epoch seconds")

    source = payload.get("source", "analyst")
    try:
        engine.feedback.submit(verdict_id, false_positive, notes, submitted_at, source)
    except UnknownVerdict:
        return Response.error(404, f"unknown verdict: {verdict_id}")
    return Response(204)


def _post_status(engine, verdict_id: str, payload: dict) -> Response:
    status = payload.get("status")
    if not isinstance(status, str):
        return Response.error(400, "'status' is required")
    try:
        verdict = engine.verdicts.transition(verdict_id, status)
    except UnknownVerdict:
        return Response.error(404, f"unknown verdict: {verdict_id}")
    except InvalidTransition as e:
        return Response.error(409, str(e))
    return Response.json(200, verdict.to_dict())


def content_length(header) -> int:
    """Parse a Content-Length header; missing means 0, malformed or negative raises ValueError."""
    if header is None or not header.strip():
        return 0
    length = int(header)
    if length < 0:
        raise ValueError(f"negative Content-Length: {length}")
    return length


class APIHandler(BaseHTTPRequestHandler):
    engine = None  # injected by start_api_server()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        self._respond(handle(self.engine, "GET", self.path))

    def do_POST(self):
        try:
            length = content_length(self.headers.get("Content-Length"))
        except ValueError as e:
            self._respond(Response.error(400, str(e)))
            return
        if length > _MAX_BODY:
            self._respond(Response.error(413, "body too large"))
            return
        body = self.rfile.read(length) if length else b""
        self._respond(handle(self.engine, "POST", self.path, body))

    def _respond(self, response: Response):
        self.send_response(response.status)
        if response.body:
            self.send_header("Content-Type", response.content_type)
            self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if response.body:
            self.wfile.write(response.body)


def start_api_server(engine, host: str = "0.0.0.0", port: int = 8080) -> ThreadingHTTPServer:
    """Serve the API from a daemon thread. Stop with ``server.shutdown()``."""
    handler = type("BoundAPIHandler", (APIHandler,), {"engine": engine})
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, name="api", daemon=True)
    thread.start()
    logger.info("API server listening on %s:%d", host, port)
    return server
