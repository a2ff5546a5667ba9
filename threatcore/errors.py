"""Exception hierarchy for the threat-detection core.

Only configuration and rule-set load failures are fatal.  Everything raised
while processing a single event is caught at the engine boundary, counted,
and turned into a dropped event or a degraded detector, so one bad event
never stops the stream.
"""


class ThreatCoreError(Exception):
    """Base exception for all threatcore errors."""


class InvalidEvent(ThreatCoreError):
    """Inbound event is malformed. Dropped and counted, never retried."""

    def __init__(self, reason: str, request_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.request_id = request_id


class InvalidSignature(ThreatCoreError):
    """Signature definition failed to compile or evaluate. Quarantined."""

    def __init__(self, signature_id: str, reason: str):
        super().__init__(f"{signature_id}: {reason}")
        self.signature_id = signature_id
        self.reason = reason


class DetectorTimeout(ThreatCoreError):
    """Detector did not finish inside the per-detector budget."""

    def __init__(self, detector: str, timeout: float):
        super().__init__(f"detector '{detector}' exceeded {timeout:.3f}s")
        self.detector = detector
        self.timeout = timeout


class BaselineStoreUnavailable(ThreatCoreError):
    """Baseline state could not be read or written."""


class DuplicateFeedback(ThreatCoreError):
    """Feedback with the same idempotency key was already applied."""

    def __init__(self, key: tuple):
        super().__init__(f"feedback already applied: {key!r}")
        self.key = key


class UnknownVerdict(ThreatCoreError):
    """Feedback or a status change references a verdict we never produced."""

    def __init__(self, verdict_id: str):
        super().__init__(f"unknown verdict: {verdict_id}")
        self.verdict_id = verdict_id


class InvalidTransition(ThreatCoreError):
    """Requested verdict status change is not allowed by the state machine."""

    def __init__(self, verdict_id: str, current: str, requested: str):
        super().__init__(
            f"verdict {verdict_id}: cannot move from '{current}' to '{requested}'"
        )
        self.verdict_id = verdict_id
        self.current = current
        self.requested = requested


class ConfigError(ThreatCoreError):
    """Configuration or signature set could not be loaded."""
