"""Prometheus metrics for the detection engine.

Each Counter/Histogram/Gauge registers itself in the prometheus_client
global REGISTRY on import.  The service exposes it with
``start_http_server``; the feedback API also serves it on ``GET /metrics``.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
events_total = Counter(
    "threatcore_events_total",
    "Events accepted for processing",
)
events_dropped_total = Counter(
    "threatcore_events_dropped_total",
    "Events dropped before detection, by reason",
    ["reason"],
)
event_latency = Histogram(
    "threatcore_event_latency_seconds",
    "End-to-end processing time per event",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------
detector_latency = Histogram(
    "threatcore_detector_latency_seconds",
    "Detector evaluation time",
    ["detector"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
detector_degraded_total = Counter(
    "threatcore_detector_degraded_total",
    "Detector runs that timed out or failed",
    ["detector", "reason"],
)

# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------
signature_matches_total = Counter(
    "threatcore_signature_matches_total",
    "Signature matches",
    ["signature_id", "severity"],
)
signatures_quarantined_total = Counter(
    "threatcore_signatures_quarantined_total",
    "Signatures excluded after failing to compile or evaluate",
)

# ---------------------------------------------------------------------------
# Verdicts & feedback
# ---------------------------------------------------------------------------
verdicts_total = Counter(
    "threatcore_verdicts_total",
    "Verdicts produced",
    ["type", "severity"],
)
verdict_risk_score = Histogram(
    "threatcore_verdict_risk_score",
    "Risk score distribution of produced verdicts",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)
feedback_total = Counter(
    "threatcore_feedback_total",
    "Feedback records, by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
dispatch_queue_depth = Gauge(
    "threatcore_dispatch_queue_depth",
    "Events waiting in worker queues",
)
rule_set_version = Gauge(
    "threatcore_rule_set_version",
    "Version of the live signature snapshot",
)
