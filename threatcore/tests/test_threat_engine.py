"""End-to-end tests for the threat engine and the per-entity dispatcher."""

import json
import threading
import time
from dataclasses import replace
from unittest.mock import patch

import pytest

from threatcore.config import EngineConfig
from threatcore.engine import EventDispatcher, ThreatEngine
from threatcore.errors import BaselineStoreUnavailable, ConfigError
from threatcore.events import EntityKey

T0 = 1_705_312_800.0


def _event(request_id="req-1", ip="203.0.113.9", **overrides):
    e = {
        "request_id": request_id,
        "timestamp": "2024-01-15T10:00:00Z",
        "entity": {"ip": ip},
        "api_id": "shop",
        "endpoint_id": "search",
        "method": "GET",
        "path": "/v1/search",
        "headers": {"User-Agent": "Mozilla/5.0"},
        "payload_size": 120,
        "status_code": 200,
        "response_time_ms": 35,
    }
    e.update(overrides)
    return json.dumps(e).encode()


def _sqli(request_id="req-1", ip="203.0.113.9"):
    return _event(request_id, ip, query="id=1 UNION SELECT password FROM users")


class TestParsing:
    def setup_method(self):
        self.engine = ThreatEngine()

    def teardown_method(self):
        self.engine.close()

    def test_invalid_json_is_dropped(self):
        assert self.engine.process_raw(b"{not json") is None
        assert self.engine.stats["dropped"] == 1
        assert self.engine.stats["consumed"] == 0

    def test_missing_field_is_dropped(self):
        raw = json.loads(_event())
        del raw["endpoint_id"]
        assert self.engine.process_raw(json.dumps(raw)) is None
        assert self.engine.stats["dropped"] == 1

    def test_benign_event_yields_no_verdict(self):
        assert self.engine.process_raw(_event()) is None
        assert self.engine.stats["consumed"] == 1
        assert self.engine.emitter.verdicts == []

    @pytest.mark.parametrize("timestamp", ["   ", 1e18, -1])
    def test_unusable_timestamp_is_dropped(self, timestamp):
        assert self.engine.process_raw(_event(timestamp=timestamp)) is None
        assert self.engine.stats["dropped"] == 1
        assert self.engine.stats["consumed"] == 0

    def test_nan_timestamp_is_dropped(self):
        raw = _event().replace(b'"2024-01-15T10:00:00Z"', b"NaN")
        assert self.engine.process_raw(raw) is None
        assert self.engine.stats["dropped"] == 1

    def test_unexpected_parse_failure_is_dropped(self):
        with patch("threatcore.engine.TrafficEvent.from_json", side_effect=RuntimeError("boom")):
            assert self.engine.process_raw(_event()) is None
        assert self.engine.stats["dropped"] == 1
        assert self.engine.stats["consumed"] == 0


class TestZeroWeightSignature:
    def setup_method(self):
        self.engine = ThreatEngine(definitions=[{
            "id": "zero-weight",
            "severity": "low",
            "weight": 0,
            "rules": [{"field": "path", "operator": "contains", "value": "/v1"}],
        }])

    def teardown_method(self):
        self.engine.close()

    def test_match_without_weight_yields_no_verdict(self):
        assert self.engine.signatures.match_event(self.engine.parse(_event()))
        assert self.engine.process_raw(_event()) is None
        assert self.engine.stats["consumed"] == 1
        assert self.engine.stats["degraded"] == 0


class TestConstantBaseline:
    def setup_method(self):
        self.engine = ThreatEngine()

    def teardown_method(self):
        self.engine.close()

    def test_one_byte_change_on_empty_payloads_is_not_flagged(self):
        # Spaced past the rate window so request_rate stays flat too.
        with patch.object(self.engine.profiler, "observe", return_value=[]):
            for i in range(150):
                self.engine.process_raw(_event(f"req-{i}", timestamp=T0 + 20 * i, payload_size=0))
            assert self.engine.emitter.verdicts == []
            v = self.engine.process_raw(_event("req-last", timestamp=T0 + 3000, payload_size=1))
        assert v is None
        assert self.engine.stats["consumed"] == 151


class TestVerdicts:
    def setup_method(self):
        self.engine = ThreatEngine()

    def teardown_method(self):
        self.engine.close()

    def test_sqli_produces_high_threat(self):
        v = self.engine.process_raw(_sqli())
        assert v.type == "threat"
        assert v.severity == "high"
        assert v.risk_score == pytest.approx(80.0)
        assert v.signature_ids() == ["sqli-union-select"]
        assert v.degraded == ()
        assert self.engine.emitter.verdicts == [v]
        assert self.engine.verdicts.get(v.verdict_id) == v

    def test_redelivered_event_is_processed_once(self):
        first = self.engine.process_raw(_sqli())
        assert first is not None
        assert self.engine.process_raw(_sqli()) is None
        assert self.engine.stats["duplicates"] == 1
        assert len(self.engine.emitter.verdicts) == 1
        assert self.engine.baselines.profile(EntityKey("ip", "203.0.113.9"), "payload_size").count == 1

    def test_feedback_lowers_signature_weight(self):
        v = self.engine.process_raw(_sqli())
        self.engine.feedback.apply_feedback(v.verdict_id, True, submitted_at=T0 + 60)
        assert self.engine.signatures.snapshot.get("sqli-union-select").weight == 70.0
        v2 = self.engine.process_raw(_sqli("req-2", ip="198.51.100.20"))
        assert v2.risk_score == pytest.approx(70.0)
        assert v2.severity == "medium"


class TestDegradedDetectors:
    def teardown_method(self):
        self.engine.close()

    def test_slow_detector_is_recorded_as_timeout(self):
        self.engine = ThreatEngine(EngineConfig(detector_timeout=0.1))

        def slow(*args):
            time.sleep(0.5)
            return []

        with patch.object(self.engine.profiler, "observe", side_effect=slow):
            v = self.engine.process_raw(_sqli())
        assert v.severity == "high"
        assert v.confidence == pytest.approx(2 / 3)
        [entry] = v.degraded
        assert entry["detector"] == "behavioral"
        assert entry["confidence"] == "degraded"
        assert "exceeded" in entry["reason"]
        assert self.engine.stats["degraded"] == 1

    def test_failing_detector_is_recorded_as_error(self):
        self.engine = ThreatEngine()
        with patch.object(self.engine.profiler, "observe", side_effect=RuntimeError("boom")):
            v = self.engine.process_raw(_sqli())
        assert v is not None
        assert "boom" in v.degraded[0]["reason"]

    def test_baseline_store_outage(self):
        self.engine = ThreatEngine()
        with patch.object(self.engine.scorer, "score_many",
                          side_effect=BaselineStoreUnavailable("backend down")):
            v = self.engine.process_raw(_sqli())
        assert v.risk_score == pytest.approx(80.0)
        [entry] = v.degraded
        assert entry["detector"] == "anomaly"
        assert entry["reason"].startswith("baseline store unavailable")


class TestConfigReload:
    def setup_method(self):
        self.engine = ThreatEngine(EngineConfig(version=1))

    def teardown_method(self):
        self.engine.close()

    def test_override_disables_signature(self):
        before = self.engine.signatures.snapshot.version
        self.engine.reload_config(replace(
            self.engine.config_holder.current,
            version=2,
            signature_overrides={"sqli-union-select": False},
        ))
        assert self.engine.signatures.snapshot.version > before
        assert self.engine.process_raw(_sqli()) is None

    def test_stale_version_is_rejected(self):
        with pytest.raises(ConfigError):
            self.engine.reload_config(EngineConfig(version=1))
        assert self.engine.config_holder.current.version == 1

    def test_learned_weights_survive_reload(self):
        v = self.engine.process_raw(_sqli())
        self.engine.feedback.apply_feedback(v.verdict_id, True, submitted_at=T0)
        self.engine.reload_config(replace(self.engine.config_holder.current, version=2))
        assert self.engine.signatures.snapshot.get("sqli-union-select").weight == 70.0


class TestMaintenance:
    def setup_method(self):
        self.engine = ThreatEngine()

    def teardown_method(self):
        self.engine.close()

    def test_closed_batches_are_folded(self):
        self.engine.process_raw(_event())
        entity = EntityKey("ip", "203.0.113.9")
        assert self.engine.profiler.pattern(entity).observations == 0
        self.engine.maintenance(now=T0 + 600)
        assert self.engine.profiler.pattern(entity).observations == 1


class TestDispatcher:
    def setup_method(self):
        self.engine = ThreatEngine()
        self.dispatcher = EventDispatcher(self.engine, workers=3)
        self.dispatcher.start()

    def teardown_method(self):
        self.dispatcher.stop()
        self.engine.close()

    def test_all_events_are_processed(self):
        for i in range(12):
            assert self.dispatcher.submit(_sqli(f"req-{i}", ip=f"10.0.0.{i % 4}")) is True
        self.dispatcher.join()
        assert self.engine.stats["consumed"] == 12
        assert len(self.engine.emitter.verdicts) == 12

    def test_same_entity_same_worker(self):
        event = self.engine.parse(_event())
        assert self.dispatcher.dispatch(event) == self.dispatcher.dispatch(event)
        self.dispatcher.join()

    def test_invalid_event_is_not_dispatched(self):
        assert self.dispatcher.submit(b"garbage") is False
        assert self.engine.stats["dropped"] == 1

    def test_workers_must_be_positive(self):
        with pytest.raises(ValueError):
            EventDispatcher(self.engine, workers=0)

    def test_unusable_timestamp_is_not_dispatched(self):
        assert self.dispatcher.submit(_event(timestamp="   ")) is False
        assert self.engine.stats["dropped"] == 1
        assert self.engine.stats["consumed"] == 0

    def test_concurrent_submits_for_one_entity_are_all_observed(self):
        barrier = threading.Barrier(4)

        def submit(k):
            barrier.wait()
            for i in range(25):
                self.dispatcher.submit(_event(f"req-{k}-{i}", timestamp=T0 + i))

        threads = [threading.Thread(target=submit, args=(k,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.dispatcher.join()

        assert self.engine.stats["consumed"] == 100
        profile = self.engine.baselines.profile(EntityKey("ip", "203.0.113.9"), "payload_size")
        assert profile.count == 100
