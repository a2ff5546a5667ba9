"""Signature engine: matches events against an immutable rule-set snapshot.

Readers (one per worker thread) grab ``self.snapshot`` once per event and
evaluate against it without locking.  Writers (config reloads, feedback
weight changes, quarantines) build a new ``RuleSetSnapshot`` and swap the
reference under ``_write_lock``.  Attribute assignment is atomic, so an
in-flight match sees either the old or the new rule set, never a mix.

Match / false-positive counters are operational statistics, not rule
definitions, so they live beside the snapshot in a small locked table
instead of forcing a snapshot rebuild on every match.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from threatcore import metrics
from threatcore.errors import InvalidSignature
from threatcore.signatures import SignatureMatch, ThreatSignature, compile_signature
from threatcore.signatures.loader import dump_signature_set, parse_signature_set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSetSnapshot:
    version: int
    signatures: tuple            # ThreatSignature, sorted by id
    quarantined: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, signature_id: str) -> ThreatSignature | None:
        for sig in self.signatures:
            if sig.id == signature_id:
                return sig
        return None

    def active(self) -> list[ThreatSignature]:
        return [s for s in self.signatures
                if s.enabled and s.id not in self.quarantined]


@dataclass
class SignatureCounters:
    match_count: int = 0
    false_positive_count: int = 0
    last_matched_at: float | None = None


@dataclass
class SignatureTestResult:
    signature_id: str
    total: int
    passed: int
    failed: int
    cases: list

    @property
    def ok(self) -> bool:
        return self.failed == 0


class SignatureEngine:

    def __init__(self, definitions=(), overrides: Mapping[str, bool] | None = None):
        self._write_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._counters: dict[str, SignatureCounters] = {}
        self._snapshot = RuleSetSnapshot(version=0, signatures=())
        if definitions:
            self.load(definitions, overrides=overrides)

    @property
    def snapshot(self) -> RuleSetSnapshot:
        return self._snapshot

    # ------------------------------------------------------------------
    # Matching (hot path, lock-free)
    # ------------------------------------------------------------------

    def match(self, targets: dict) -> list[SignatureMatch]:
        """Evaluate every active signature; return all matches, ordered by id.

        No short-circuit on the first hit: the risk aggregator needs every
        match to build its score.  A signature that blows up during
        evaluation is quarantined and skipped.
        """
        snapshot = self._snapshot
        matches = []
        broken = []
        for sig in snapshot.active():
            try:
                m = sig.evaluate(targets)
            except Exception as e:
                broken.append((sig.id, f"evaluation failed: {e!r}"))
                continue
            if m is not None:
                matches.append(m)

        for sig_id, reason in broken:
            self.quarantine(sig_id, reason)
        if matches:
            self._record_matches(matches)
        return matches

    def match_event(self, event) -> list[SignatureMatch]:
        return self.match(event.detection_targets())

    def _record_matches(self, matches) -> None:
        now = time.time()
        with self._counter_lock:
            for m in matches:
                c = self._counters.setdefault(m.signature_id, SignatureCounters())
                c.match_count += 1
                c.last_matched_at = now
        for m in matches:
            metrics.signature_matches_total.labels(
                signature_id=m.signature_id, severity=m.severity,
            ).inc()

    # ------------------------------------------------------------------
    # Publishing new snapshots (copy-on-write)
    # ------------------------------------------------------------------

    def load(self, definitions, overrides: Mapping[str, bool] | None = None) -> RuleSetSnapshot:
        """Compile definitions into a fresh snapshot, replacing the current one.

        Definitions that fail to compile are quarantined by id; the rest load.
        Signatures already known keep their learned (feedback-adjusted) weight.
        """
        compiled = {}
        quarantined = {}
        for definition in definitions:
            try:
                sig = compile_signature(definition)
            except InvalidSignature as e:
                logger.warning("Quarantined signature %s: %s", e.signature_id, e.reason)
                metrics.signatures_quarantined_total.inc()
                quarantined[e.signature_id] = e.reason
                continue
            if sig.id in compiled:
                logger.warning("Duplicate signature id %s, keeping the first", sig.id)
                continue
            compiled[sig.id] = sig

        with self._write_lock:
            current = self._snapshot
            for sig_id, sig in compiled.items():
                previous = current.get(sig_id)
                if previous is not None and previous.weight != sig.weight:
                    compiled[sig_id] = sig.with_weight(previous.weight)
            # Ids that appear only as quarantined must not shadow a good copy.
            for sig_id in compiled:
                quarantined.pop(sig_id, None)
            snapshot = self._build(
                current.version + 1, compiled.values(), quarantined, overrides,
            )
            self._snapshot = snapshot

        logger.info("Loaded %d signatures (%d quarantined), rule set v%d",
                    len(snapshot.signatures), len(snapshot.quarantined), snapshot.version)
        return snapshot

    def add(self, definition: dict) -> ThreatSignature:
        """Compile and publish one custom signature. Raises InvalidSignature."""
        sig = compile_signature(definition)
        with self._write_lock:
            current = self._snapshot
            others = [s for s in current.signatures if s.id != sig.id]
            quarantined = {k: v for k, v in current.quarantined.items() if k != sig.id}
            self._snapshot = self._build(current.version + 1, others + [sig], quarantined)
        return sig

    def set_enabled(self, signature_id: str, enabled: bool) -> bool:
        """Soft enable/disable. Signatures are never deleted."""
        return self._update(signature_id, lambda s: s.with_enabled(enabled))

    def apply_overrides(self, overrides: Mapping[str, bool]) -> RuleSetSnapshot:
        with self._write_lock:
            current = self._snapshot
            self._snapshot = self._build(
                current.version + 1, current.signatures, current.quarantined, overrides,
            )
            return self._snapshot

    def adjust_weights(self, deltas: Mapping[str, float], min_weight: float,
                       max_weight: float) -> RuleSetSnapshot:
        """Shift signature weights by *deltas* and publish a new snapshot.

        Increases stop at ``max_weight``.  Decreases stop at ``min_weight``;
        a weight already below the floor is left where it is rather than
        being pulled up by a false-positive report.
        """
        with self._write_lock:
            current = self._snapshot
            updated = []
            for sig in current.signatures:
                delta = deltas.get(sig.id)
                if delta is None:
                    updated.append(sig)
                    continue
                if delta >= 0:
                    weight = min(max_weight, sig.weight + delta)
                    weight = max(weight, sig.weight) if sig.weight > max_weight else weight
                else:
                    weight = max(min(sig.weight, min_weight), sig.weight + delta)
                updated.append(sig.with_weight(weight))
            self._snapshot = self._build(current.version + 1, updated, current.quarantined)
            return self._snapshot

    def quarantine(self, signature_id: str, reason: str) -> None:
        with self._write_lock:
            current = self._snapshot
            if signature_id in current.quarantined:
                return
            quarantined = dict(current.quarantined)
            quarantined[signature_id] = reason
            self._snapshot = self._build(current.version + 1, current.signatures, quarantined)
        metrics.signatures_quarantined_total.inc()
        logger.error("Quarantined signature %s: %s", signature_id, reason)

    def record_false_positive(self, signature_ids) -> None:
        with self._counter_lock:
            for sig_id in signature_ids:
                c = self._counters.setdefault(sig_id, SignatureCounters())
                c.false_positive_count += 1

    def counters(self, signature_id: str) -> SignatureCounters:
        with self._counter_lock:
            c = self._counters.get(signature_id, SignatureCounters())
            return SignatureCounters(c.match_count, c.false_positive_count, c.last_matched_at)

    def _update(self, signature_id, fn) -> bool:
        with self._write_lock:
            current = self._snapshot
            found = False
            updated = []
            for sig in current.signatures:
                if sig.id == signature_id:
                    sig = fn(sig)
                    found = True
                updated.append(sig)
            if found:
                self._snapshot = self._build(current.version + 1, updated, current.quarantined)
            return found

    @staticmethod
    def _build(version, signatures, quarantined, overrides=None) -> RuleSetSnapshot:
        if overrides:
            signatures = [
                s.with_enabled(overrides[s.id]) if s.id in overrides else s
                for s in signatures
            ]
        return RuleSetSnapshot(
            version=version,
            signatures=tuple(sorted(signatures, key=lambda s: s.id)),
            quarantined=MappingProxyType(dict(quarantined)),
        )

    # ------------------------------------------------------------------
    # Management: testing, statistics, import / export
    # ------------------------------------------------------------------

    def test_signature(self, signature_id: str, cases: list[dict]) -> SignatureTestResult:
        """Run one signature against labelled targets.

        Each case is ``{"targets": {...}, "expected_match": bool}``.  Test runs
        do not touch match counters.
        """
        sig = self._snapshot.get(signature_id)
        if sig is None:
            raise KeyError(signature_id)

        results = []
        passed = 0
        for i, case in enumerate(cases):
            expected = bool(case.get("expected_match", True))
            try:
                actual = sig.evaluate(case.get("targets", {})) is not None
                error = None
            except Exception as e:
                actual, error = False, repr(e)
            ok = error is None and actual == expected
            passed += ok
            results.append({
                "case": i,
                "expected": expected,
                "actual": actual,
                "passed": ok,
                "error": error,
            })
        return SignatureTestResult(
            signature_id=signature_id,
            total=len(cases),
            passed=passed,
            failed=len(cases) - passed,
            cases=results,
        )

    def statistics(self) -> dict:
        snapshot = self._snapshot
        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        matches_by_category: dict[str, int] = {}
        total_matches = 0
        with self._counter_lock:
            counters = dict(self._counters)
        for sig in snapshot.signatures:
            by_category[sig.category] = by_category.get(sig.category, 0) + 1
            by_severity[sig.severity] = by_severity.get(sig.severity, 0) + 1
            count = counters[sig.id].match_count if sig.id in counters else 0
            total_matches += count
            matches_by_category[sig.category] = matches_by_category.get(sig.category, 0) + count
        enabled = sum(1 for s in snapshot.signatures if s.enabled)
        return {
            "version": snapshot.version,
            "total_signatures": len(snapshot.signatures),
            "enabled": enabled,
            "disabled": len(snapshot.signatures) - enabled,
            "quarantined": len(snapshot.quarantined),
            "by_category": by_category,
            "by_severity": by_severity,
            "total_matches": total_matches,
            "matches_by_category": matches_by_category,
        }

    def import_signature_set(self, data: str | bytes, signature_set: str) -> RuleSetSnapshot:
        """Merge a YAML/JSON signature set into the running rule set.

        Every signature in the import must compile; a partially valid import
        is rejected as a whole so a set never ends up half-applied.
        """
        definitions = parse_signature_set(data, default_set=signature_set)
        imported = [compile_signature(d, signature_set) for d in definitions]
        with self._write_lock:
            current = self._snapshot
            ids = {s.id for s in imported}
            keep = [s for s in current.signatures if s.id not in ids]
            quarantined = {k: v for k, v in current.quarantined.items() if k not in ids}
            self._snapshot = self._build(current.version + 1, keep + imported, quarantined)
            return self._snapshot

    def export_signature_set(self, signature_set: str) -> str:
        sigs = [s for s in self._snapshot.signatures if s.signature_set == signature_set]
        return dump_signature_set(sigs, signature_set)
