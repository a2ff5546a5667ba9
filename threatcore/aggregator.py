"""Risk aggregator: many weak signals in, one verdict out.

Contributions, each clipped at zero:

    signature    severity_weight[severity] * signature.weight
    deviation    deviation * metric_weight[metric] * baseline confidence
                 (only deviations >= deviation_floor become indicators)
    behavioral   risk_factor * behavior_weight

risk_score = min(100, sum of contributions).  Severity is a pure function
of the score (``severity_for``), so raising any one contribution can never
lower the severity.

No indicators, no verdict.  The aggregator only depends on
``DetectorResult``, so new detectors plug in without touching it.
"""

import time

from threatcore.config import AggregationSettings, DEFAULT_METRIC_WEIGHTS
from threatcore.events import TrafficEvent
from threatcore.verdicts import (
    Indicator,
    Verdict,
    VerdictStatus,
    severity_for,
    verdict_id_for,
)

__all__ = ["RiskAggregator", "severity_for"]


def signature_indicator(match, settings: AggregationSettings) -> Indicator:
    multiplier = settings.severity_weights.get(match.severity, 1.0)
    return Indicator(
        kind="signature",
        id=match.signature_id,
        detail=f"{match.name}: {match.matched_field} {match.rule_operator} -> {match.matched_value}",
        contribution=max(0.0, multiplier * match.weight),
        confidence=1.0,
    )


def deviation_indicators(vector, metric_weights, settings: AggregationSettings) -> list[Indicator]:
    if vector is None:
        return []
    out = []
    for d in vector.deviations:
        if d.deviation < settings.deviation_floor:
            continue
        weight = metric_weights.get(d.metric, 0.0)
        contribution = d.deviation * weight * d.confidence
        if contribution <= 0:
            continue
        out.append(Indicator(
            kind="deviation",
            id=d.metric,
            detail=f"deviation {d.deviation:.1f}: {d.describe()}",
            contribution=contribution,
            confidence=d.confidence,
        ))
    return out


def behavior_indicators(anomalies, settings: AggregationSettings) -> list[Indicator]:
    out = []
    for a in anomalies or ():
        contribution = max(0.0, a.risk_factor * settings.behavior_weight)
        if contribution <= 0:
            continue
        out.append(Indicator(
            kind="behavioral",
            id=a.feature,
            detail=f"{a.severity}: {a.evidence}",
            contribution=contribution,
            confidence=a.confidence,
        ))
    return out


class RiskAggregator:

    def __init__(self, settings: AggregationSettings | None = None,
                 metric_weights=None):
        self.settings = settings or AggregationSettings()
        self.metric_weights = dict(metric_weights or DEFAULT_METRIC_WEIGHTS)

    def configure(self, settings: AggregationSettings, metric_weights) -> None:
        self.settings = settings
        self.metric_weights = dict(metric_weights)

    def aggregate(self, signature_matches, deviation_vector, behavior_anomalies,
                  event: TrafficEvent, degraded=(), completed: int | None = None,
                  total: int | None = None, now: float | None = None) -> Verdict | None:
        """Build a verdict from raw detector outputs. None when nothing contributes."""
        indicators = [i for i in (signature_indicator(m, self.settings)
                                  for m in signature_matches or ())
                      if i.contribution > 0]
        indicators += deviation_indicators(deviation_vector, self.metric_weights, self.settings)
        indicators += behavior_indicators(behavior_anomalies, self.settings)
        if not indicators:
            return None

        total = total or 3
        completed = total if completed is None else completed

        raw = sum(i.contribution for i in indicators)
        if raw <= 0:
            return None
        risk_score = min(100.0, raw)
        weighted_conf = sum(i.contribution * i.confidence for i in indicators) / raw
        confidence = max(0.0, min(1.0, weighted_conf * completed / total))

        has_signature = any(i.kind == "signature" for i in indicators)
        return Verdict(
            verdict_id=verdict_id_for(event.request_id),
            type="threat" if has_signature else "anomaly",
            severity=severity_for(risk_score, self.settings),
            risk_score=risk_score,
            confidence=confidence,
            status=VerdictStatus.NEW,
            indicators=tuple(sorted(indicators, key=lambda i: -i.contribution)),
            entity=event.entity(),
            detected_at=time.time() if now is None else now,
            request_id=event.request_id,
            degraded=tuple(degraded),
        )

    def combine(self, results, event: TrafficEvent, expected: int | None = None,
                now: float | None = None) -> Verdict | None:
        """Join ``DetectorResult``s. Degraded results contribute no indicators."""
        matches, anomalies = [], []
        vector = None
        degraded = []
        completed = 0
        for r in results:
            if r.degraded:
                degraded.append({
                    "detector": r.detector,
                    "reason": r.degraded,
                    "confidence": "degraded",
                })
                continue
            completed += 1
            matches.extend(r.signature_matches)
            anomalies.extend(r.behavior_anomalies)
            if r.deviations is not None:
                vector = r.deviations
        return self.aggregate(
            matches, vector, anomalies, event,
            degraded=degraded,
            completed=completed,
            total=expected or len(results),
            now=now,
        )
