"""Anomaly scorer: how far is this value from the entity's normal?

The scorer turns an observation into a deviation score in [0, 100] against
the *pre-update* baseline, then folds the observation in.  Both steps run
under the entity's shard lock.  It never assigns severity; that is the risk
aggregator's job.

The statistical model is pluggable.  ``ZScoreModel`` (default) maps
|x - mean| / std linearly onto [0, 100], saturating at ``z_saturation``.
``QuantileModel`` scores distance from the median in units of the
median-to-p99 spread, which is kinder to heavy-tailed metrics like payload
size.  Both floor the scale at
``max(min_std, relative_std_floor * |center|)`` so a metric that never
varies (payload size 0 on every GET) doesn't score 100 on a one-byte change.

Cold start: until a profile has ``min_samples`` observations the score is
capped at ``cold_start_cap`` and flagged low-confidence, whatever the input.
"""

import math
import time
from dataclasses import dataclass

from threatcore.baseline import BaselineProfile, BaselineStore
from threatcore.config import BaselineSettings
from threatcore.events import EntityKey, TrafficEvent


@dataclass(frozen=True)
class MetricDeviation:
    metric: str
    value: float | str
    deviation: float          # [0, 100]
    confidence: float         # [0, 1], baseline confidence before this update
    samples: int              # observations behind the baseline
    expected: float | None = None
    low_confidence: bool = False

    def describe(self) -> str:
        if isinstance(self.value, str):
            return f"{self.metric}={self.value} (seen in {self.samples} prior requests)"
        expected = "n/a" if self.expected is None else f"{self.expected:.2f}"
        return f"{self.metric}={self.value:.2f} expected~{expected} (n={self.samples})"


@dataclass(frozen=True)
class DeviationVector:
    entity: EntityKey
    deviations: tuple = ()
    confidence: float = 0.0
    available: bool = True

    def get(self, metric: str) -> MetricDeviation | None:
        for d in self.deviations:
            if d.metric == metric:
                return d
        return None

    @property
    def max_deviation(self) -> float:
        return max((d.deviation for d in self.deviations), default=0.0)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class _Model:
    """Shared sigma floor: a near-constant baseline must not turn a one-unit
    wobble into a full-scale deviation."""

    def __init__(self, z_saturation: float = 5.0, min_variance: float = 1e-6,
                 min_std: float = 1.0, relative_std_floor: float = 0.05):
        self.z_saturation = z_saturation
        self.min_variance = min_variance
        self.min_std = min_std
        self.relative_std_floor = relative_std_floor

    def floor(self, center: float) -> float:
        return max(math.sqrt(self.min_variance), self.min_std,
                   self.relative_std_floor * abs(center))


class ZScoreModel(_Model):
    name = "zscore"

    def deviation(self, profile: BaselineProfile, value: float) -> float:
        std = max(math.sqrt(max(profile.variance, 0.0)), self.floor(profile.mean))
        z = abs(value - profile.mean) / std
        return min(100.0, z / self.z_saturation * 100.0)


class QuantileModel(_Model):
    name = "quantile"
    # p99 - p50 of a normal distribution, in standard deviations.
    p99_z = 2.326

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.z_saturation = max(self.z_saturation, 1.0 + 1e-9)

    def deviation(self, profile: BaselineProfile, value: float) -> float:
        p50 = profile.quantiles.get(0.5, profile.mean)
        p99 = profile.quantiles.get(0.99, profile.mean)
        spread = max(abs(p99 - p50), self.p99_z * self.floor(p50))
        r = abs(value - p50) / spread
        # Inside the p50..p99 band scores up to 50; beyond it the remaining
        # 50 points are spread over (z_saturation - 1) band widths.
        if r <= 1.0:
            return 50.0 * r
        return min(100.0, 50.0 + 50.0 * (r - 1.0) / (self.z_saturation - 1.0))


def build_model(settings: BaselineSettings):
    cls = QuantileModel if settings.model == "quantile" else ZScoreModel
    return cls(settings.z_saturation, settings.min_variance,
               settings.min_std, settings.relative_std_floor)


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

class AnomalyScorer:

    def __init__(self, store: BaselineStore, settings: BaselineSettings | None = None,
                 model=None):
        self.store = store
        self.settings = settings or store.settings
        self.model = model or build_model(self.settings)

    def configure(self, settings: BaselineSettings) -> None:
        self.settings = settings
        self.model = build_model(settings)
        self.store.configure(settings)

    def score(self, entity: EntityKey, metric: str, value: float,
              now: float | None = None, event_id: str | None = None) -> MetricDeviation:
        """Deviation of *value* from the pre-update baseline, then observe it."""
        now = time.time() if now is None else now
        with self.store.locked(entity) as baselines:
            profile = baselines.get(metric)
            if profile is None or profile.count == 0:
                result = MetricDeviation(metric, value, 0.0, 0.0, 0, None, True)
            else:
                result = self._cap(MetricDeviation(
                    metric=metric,
                    value=value,
                    deviation=self.model.deviation(profile, value),
                    confidence=profile.confidence,
                    samples=profile.count,
                    expected=profile.mean,
                ))
            baselines.observe(metric, value, now, event_id)
        return result

    def score_category(self, entity: EntityKey, metric: str, value: str,
                       now: float | None = None, event_id: str | None = None) -> MetricDeviation:
        """Novelty of a categorical value: 100 for never seen, 0 for the only value seen."""
        now = time.time() if now is None else now
        with self.store.locked(entity) as baselines:
            profile = baselines.get(metric)
            if profile is None or profile.count == 0:
                result = MetricDeviation(metric, value, 0.0, 0.0, 0, None, True)
            else:
                result = self._cap(MetricDeviation(
                    metric=metric,
                    value=value,
                    deviation=(1.0 - profile.share(value)) * 100.0,
                    confidence=profile.confidence,
                    samples=profile.count,
                ))
            baselines.observe_category(metric, value, now, event_id)
        return result

    def score_many(self, event: TrafficEvent, request_rate: float | None = None,
                   entity: EntityKey | None = None) -> DeviationVector:
        """Score every metric the event carries for its primary entity."""
        entity = entity or event.primary_entity()
        now = event.timestamp
        deviations = []
        if request_rate is not None:
            deviations.append(self.score(entity, "request_rate", request_rate,
                                         now, event.request_id))
        deviations.append(self.score(entity, "payload_size", float(event.payload_size),
                                     now, event.request_id))
        if event.response_time_ms is not None:
            deviations.append(self.score(entity, "response_time", event.response_time_ms,
                                         now, event.request_id))
        if event.country:
            deviations.append(self.score_category(entity, "geo_novelty", event.country,
                                                  now, event.request_id))

        confidence = sum(d.confidence for d in deviations) / len(deviations)
        return DeviationVector(entity=entity, deviations=tuple(deviations),
                               confidence=confidence)

    def _cap(self, result: MetricDeviation) -> MetricDeviation:
        if result.samples >= self.settings.min_samples:
            return result
        return MetricDeviation(
            metric=result.metric,
            value=result.value,
            deviation=min(result.deviation, self.settings.cold_start_cap),
            confidence=result.confidence,
            samples=result.samples,
            expected=result.expected,
            low_confidence=True,
        )
