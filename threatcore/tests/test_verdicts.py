"""Tests for verdict serialization and the status state machine."""

import json

import pytest

from threatcore.errors import InvalidTransition, UnknownVerdict
from threatcore.verdicts import (
    Indicator,
    Verdict,
    VerdictStatus,
    VerdictStore,
    verdict_id_for,
)

T0 = 1_705_312_800.0


def _verdict(request_id="req-1", **overrides):
    v = dict(
        verdict_id=verdict_id_for(request_id),
        type="threat",
        severity="high",
        risk_score=80.0,
        confidence=1.0,
        status=VerdictStatus.NEW,
        indicators=(Indicator("signature", "sqli-union-select", "union select", 80.0),),
        entity={"ip": "203.0.113.9", "api_id": "shop", "endpoint_id": "search"},
        detected_at=T0,
        request_id=request_id,
    )
    v.update(overrides)
    return Verdict(**v)


class TestSerialization:
    def test_to_dict(self):
        d = _verdict().to_dict()
        assert d["status"] == "new"
        assert d["detected_at"] == "2024-01-15T10:00:00.000Z"
        assert d["indicators"] == [{
            "kind": "signature",
            "id": "sqli-union-select",
            "detail": "union select",
            "contribution": 80.0,
        }]
        assert d["degraded"] == []
        assert "parent_id" not in d
        assert "feedback" not in d

    def test_to_json_is_parseable(self):
        assert json.loads(_verdict().to_json())["verdict_id"] == verdict_id_for("req-1")

    def test_verdict_ids_are_stable_and_distinct(self):
        assert verdict_id_for("req-1") == verdict_id_for("req-1")
        assert verdict_id_for("req-1") != verdict_id_for("req-2")
        assert verdict_id_for("req-1", 1) != verdict_id_for("req-1")


class TestStore:
    def setup_method(self):
        self.store = VerdictStore()
        self.v = _verdict()
        self.store.add(self.v)

    def test_duplicate_add_is_ignored(self):
        assert self.store.add(_verdict()) is False
        assert len(self.store) == 1

    def test_get_unknown(self):
        with pytest.raises(UnknownVerdict):
            self.store.get("nope")

    def test_bounded(self):
        store = VerdictStore(max_verdicts=2)
        for i in range(3):
            store.add(_verdict(f"r{i}"))
        assert len(store) == 2
        assert verdict_id_for("r0") not in store

    @pytest.mark.parametrize("path", [
        ["investigating", "resolved"],
        ["investigating", "false_positive"],
        ["false_positive"],
    ])
    def test_valid_paths(self, path):
        for status in path:
            self.store.transition(self.v.verdict_id, status)
        assert self.store.get(self.v.verdict_id).status.value == path[-1]

    @pytest.mark.parametrize("path,bad", [
        ([], "resolved"),
        (["investigating"], "new"),
        (["false_positive"], "investigating"),
        (["investigating", "resolved"], "false_positive"),
        ([], "archived"),
    ])
    def test_invalid_transitions(self, path, bad):
        for status in path:
            self.store.transition(self.v.verdict_id, status)
        with pytest.raises(InvalidTransition):
            self.store.transition(self.v.verdict_id, bad)

    def test_annotate_terminal_verdict(self):
        self.store.transition(self.v.verdict_id, "false_positive")
        self.store.annotate(self.v.verdict_id, {"false_positive": True, "notes": "load test"})
        v = self.store.get(self.v.verdict_id)
        assert v.status is VerdictStatus.FALSE_POSITIVE
        assert v.to_dict()["feedback"] == [{"false_positive": True, "notes": "load test"}]


class TestReopen:
    def setup_method(self):
        self.store = VerdictStore()
        self.v = _verdict()
        self.store.add(self.v)

    def test_only_terminal_verdicts_reopen(self):
        with pytest.raises(InvalidTransition):
            self.store.reopen(self.v.verdict_id, now=T0 + 60)

    def test_reopen_creates_linked_verdict(self):
        self.store.transition(self.v.verdict_id, "investigating")
        self.store.transition(self.v.verdict_id, "resolved")
        child = self.store.reopen(self.v.verdict_id, now=T0 + 60)
        assert child.verdict_id != self.v.verdict_id
        assert child.parent_id == self.v.verdict_id
        assert child.status is VerdictStatus.NEW
        assert child.detected_at == T0 + 60
        # Parent keeps its terminal status.
        assert self.store.get(self.v.verdict_id).status is VerdictStatus.RESOLVED
        assert self.store.reopen(self.v.verdict_id, now=T0 + 120) == child
        assert child.to_dict()["parent_id"] == self.v.verdict_id
