# Detectors behind one capability interface.
#
# The engine fans an event out to every Detector and joins the
# DetectorResults; the risk aggregator only ever sees DetectorResult.  A new
# detection technique is a new subclass, nothing else changes.
#
# Detectors raise nothing for ordinary bad luck: a detector that can't do
# its job for this event returns a result with ``degraded`` set, and the
# aggregator leaves it out of the score.

from dataclasses import dataclass

from threatcore.anomaly import AnomalyScorer, DeviationVector
from threatcore.behavior import BehavioralProfiler, SequenceStep
from threatcore.errors import BaselineStoreUnavailable
from threatcore.events import TrafficEvent
from threatcore.sharding import ShardedState
from threatcore.signatures.engine import SignatureEngine
from threatcore.sliding_window import SlidingWindow


@dataclass(frozen=True)
class DetectorResult:
    detector: str
    signature_matches: tuple = ()
    deviations: DeviationVector | None = None
    behavior_anomalies: tuple = ()
    degraded: str | None = None

    @classmethod
    def failed(cls, detector: str, reason: str) -> "DetectorResult":
        return cls(detector=detector, degraded=reason)


class Detector:
    """Base detector. Subclass and implement evaluate()."""

    name: str

    def evaluate(self, event: TrafficEvent) -> DetectorResult:
        raise NotImplementedError


class SignatureDetector(Detector):
    name = "signature"

    def __init__(self, engine: SignatureEngine):
        self.engine = engine

    def evaluate(self, event: TrafficEvent) -> DetectorResult:
        return DetectorResult(
            detector=self.name,
            signature_matches=tuple(self.engine.match_event(event)),
        )


class AnomalyDetector(Detector):
    """Request rate comes from a per-entity sliding window; the rest from the event."""

    name = "anomaly"

    def __init__(self, scorer: AnomalyScorer):
        self.scorer = scorer
        self._windows = ShardedState(scorer.settings.shards)

    def request_rate(self, event: TrafficEvent) -> float:
        key = str(event.primary_entity())
        seconds = self.scorer.settings.rate_window_seconds
        with self._windows.locked(key) as windows:
            window = windows.get(key)
            if window is None or window.max_age != seconds:
                window = windows[key] = SlidingWindow(seconds)
            window.add(event.timestamp, now=event.timestamp)
            return window.rate(event.timestamp)

    def evaluate(self, event: TrafficEvent) -> DetectorResult:
        try:
            vector = self.scorer.score_many(event, request_rate=self.request_rate(event))
        except BaselineStoreUnavailable as e:
            return DetectorResult(
                detector=self.name,
                deviations=DeviationVector(event.primary_entity(), available=False),
                degraded=f"baseline store unavailable: {e}",
            )
        return DetectorResult(detector=self.name, deviations=vector)


class BehavioralDetector(Detector):
    name = "behavioral"

    def __init__(self, profiler: BehavioralProfiler):
        self.profiler = profiler

    def evaluate(self, event: TrafficEvent) -> DetectorResult:
        anomalies = self.profiler.observe(event.primary_entity(), SequenceStep.from_event(event))
        return DetectorResult(detector=self.name, behavior_anomalies=tuple(anomalies))
