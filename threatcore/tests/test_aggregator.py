"""Tests for the risk aggregator and severity mapping."""

import pytest

from threatcore.aggregator import RiskAggregator, severity_for
from threatcore.anomaly import DeviationVector, MetricDeviation
from threatcore.behavior import BehaviorAnomaly
from threatcore.config import AggregationSettings
from threatcore.detectors import DetectorResult
from threatcore.events import EntityKey, TrafficEvent
from threatcore.signatures import SignatureMatch
from threatcore.verdicts import VerdictStatus, verdict_id_for

T0 = 1_705_312_800.0


def _event(**overrides):
    e = {
        "request_id": "req-42",
        "timestamp": T0,
        "entity": {"ip": "203.0.113.9", "user_id": "mallory"},
        "api_id": "shop",
        "endpoint_id": "search",
        "method": "GET",
        "path": "/v1/search",
        "headers": {},
        "payload_size": 0,
        "status_code": 200,
    }
    e.update(overrides)
    return TrafficEvent.from_dict(e)


def _match(sig_id="sqli-union-select", severity="high", weight=80.0):
    return SignatureMatch(
        signature_id=sig_id, name=sig_id, category="injection", severity=severity,
        weight=weight, matched_field="query", matched_value="1 UNION SELECT",
        rule_operator="regex",
    )


def _vector(*deviations, entity=EntityKey("user", "mallory")):
    return DeviationVector(entity=entity, deviations=tuple(deviations))


def _dev(metric="request_rate", deviation=100.0, confidence=1.0):
    return MetricDeviation(metric=metric, value=40.0, deviation=deviation,
                           confidence=confidence, samples=500, expected=10.0)


def _behavior(feature="sensitive_endpoint", risk=70.0, confidence=1.0):
    return BehaviorAnomaly(feature=feature, deviation=1.0, risk_factor=risk,
                           severity=severity_for(risk), evidence="first access to /admin",
                           confidence=confidence)


class TestSeverity:
    @pytest.mark.parametrize("score,expected", [
        (0, "low"),
        (40, "low"),
        (40.01, "medium"),
        (70, "medium"),
        (70.5, "high"),
        (90, "high"),
        (90.01, "critical"),
        (100, "critical"),
    ])
    def test_thresholds_are_strict(self, score, expected):
        assert severity_for(score) == expected


class TestAggregate:
    def setup_method(self):
        self.agg = RiskAggregator()

    def test_single_signature(self):
        v = self.agg.aggregate([_match()], None, [], _event(), now=T0)
        assert v.risk_score == pytest.approx(80.0)
        assert v.severity == "high"
        assert v.type == "threat"
        assert v.status is VerdictStatus.NEW
        assert v.confidence == pytest.approx(1.0)
        assert v.signature_ids() == ["sqli-union-select"]
        assert v.entity["user_id"] == "mallory"
        assert v.detected_at == T0

    def test_verdict_id_follows_request_id(self):
        v1 = self.agg.aggregate([_match()], None, [], _event())
        v2 = self.agg.aggregate([_match()], None, [], _event())
        assert v1.verdict_id == v2.verdict_id == verdict_id_for("req-42")

    def test_rate_spike_with_sensitive_access(self):
        v = self.agg.aggregate([], _vector(_dev()), [_behavior()], _event())
        # 100 * 0.6 * 1.0 + 70 * 0.4
        assert v.risk_score == pytest.approx(88.0)
        assert v.severity == "high"
        assert v.type == "anomaly"
        assert [i.kind for i in v.indicators] == ["deviation", "behavioral"]

    def test_indicators_sorted_by_contribution(self):
        v = self.agg.aggregate([_match("low-sig", "low", 10)], _vector(_dev()), [], _event())
        contributions = [i.contribution for i in v.indicators]
        assert contributions == sorted(contributions, reverse=True)

    def test_score_is_clipped(self):
        matches = [_match("a", "critical", 100), _match("b", "critical", 100)]
        v = self.agg.aggregate(matches, None, [], _event())
        assert v.risk_score == 100.0
        assert v.severity == "critical"

    def test_deviation_below_floor_is_ignored(self):
        assert self.agg.aggregate([], _vector(_dev(deviation=29.9)), [], _event()) is None

    def test_deviation_is_scaled_by_baseline_confidence(self):
        v = self.agg.aggregate([], _vector(_dev(confidence=0.5)), [], _event())
        assert v.risk_score == pytest.approx(30.0)
        assert v.severity == "low"
        assert v.confidence == pytest.approx(0.5)

    def test_nothing_contributes(self):
        assert self.agg.aggregate([], None, [], _event()) is None
        assert self.agg.aggregate([], _vector(), [], _event()) is None

    def test_adding_an_indicator_never_lowers_severity(self):
        order = ["low", "medium", "high", "critical"]
        base = self.agg.aggregate([_match(weight=50)], None, [], _event())
        more = self.agg.aggregate([_match(weight=50)], _vector(_dev(deviation=40)), [], _event())
        assert more.risk_score >= base.risk_score
        assert order.index(more.severity) >= order.index(base.severity)

    def test_metric_weights_are_configurable(self):
        agg = RiskAggregator(metric_weights={"request_rate": 0.2})
        v = agg.aggregate([], _vector(_dev()), [], _event())
        assert v.risk_score == pytest.approx(20.0)

    def test_zero_weight_signature_alone_yields_nothing(self):
        assert self.agg.aggregate([_match(weight=0)], None, [], _event()) is None

    def test_zero_weight_signature_is_left_out(self):
        v = self.agg.aggregate([_match("muted", weight=0)], _vector(_dev()), [], _event())
        assert v.risk_score == pytest.approx(60.0)
        assert v.signature_ids() == []
        assert [i.kind for i in v.indicators] == ["deviation"]

    def test_zero_severity_multiplier_yields_nothing(self):
        agg = RiskAggregator(AggregationSettings(severity_weights={"high": 0.0}))
        assert agg.aggregate([_match()], None, [], _event()) is None


class TestCombine:
    def setup_method(self):
        self.agg = RiskAggregator()

    def test_degraded_detector_scales_confidence(self):
        results = [
            DetectorResult("signature", signature_matches=(_match(),)),
            DetectorResult("anomaly", deviations=_vector()),
            DetectorResult.failed("behavioral", "timeout after 0.05s"),
        ]
        v = self.agg.combine(results, _event(), expected=3)
        assert v.risk_score == pytest.approx(80.0)
        assert v.confidence == pytest.approx(2 / 3)
        assert v.degraded == ({
            "detector": "behavioral",
            "reason": "timeout after 0.05s",
            "confidence": "degraded",
        },)
        assert v.to_dict()["degraded"][0]["detector"] == "behavioral"

    def test_all_results_are_merged(self):
        results = [
            DetectorResult("signature"),
            DetectorResult("anomaly", deviations=_vector(_dev())),
            DetectorResult("behavioral", behavior_anomalies=(_behavior(),)),
        ]
        v = self.agg.combine(results, _event())
        assert v.risk_score == pytest.approx(88.0)
        assert v.degraded == ()

    def test_degraded_only_yields_nothing(self):
        results = [DetectorResult.failed("signature", "error: boom")]
        assert self.agg.combine(results, _event(), expected=3) is None
