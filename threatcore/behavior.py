"""Behavioral profiler: learns how an entity uses the API over time.

Every event becomes a ``SequenceStep`` that goes two places:

  1. the entity's bounded recent window (what it is doing *now*), and
  2. a pending batch, folded into the long-lived ``BehaviorPattern`` when
     its time bucket closes or it reaches ``batch_size``.

Patterns are updated per batch, not per event, so one noisy request can't
move them and the hot path only appends.  ``evaluate`` compares the recent
window against the pattern feature by feature:

    time_of_day            share of recent requests at hours the entity ~never uses
    endpoint_distribution  Jensen-Shannon divergence, recent vs learned
    method_distribution    same, over HTTP methods
    transitions            share of endpoint->endpoint moves never seen before
    burst                  requests in the last minute vs learned per-minute rate
    sensitive_endpoint     first ever access to an admin/config/... path

Every feature is normalized to [0, 1] and flagged above
``deviation_threshold``.  Nothing is flagged until the pattern has
``min_observations`` behind it.
"""

import math
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from threatcore.config import BehaviorSettings
from threatcore.events import EntityKey, TrafficEvent
from threatcore.sharding import ShardedState
from threatcore.verdicts import severity_for

# Largest risk factor each feature can produce (at deviation 1.0).
FEATURE_RISK = {
    "time_of_day": 50.0,
    "endpoint_distribution": 60.0,
    "method_distribution": 45.0,
    "transitions": 55.0,
    "burst": 80.0,
    "sensitive_endpoint": 70.0,
}

# An hour whose learned share is below this counts as "never used".
_RARE_HOUR_SHARE = 0.02

# Distribution features need this many recent steps to mean anything.
_MIN_WINDOW = 10

_BURST_ALPHA = 0.2


@dataclass(frozen=True)
class SequenceStep:
    timestamp: float
    endpoint: str
    method: str
    path: str
    status_code: int = 0

    @classmethod
    def from_event(cls, event: TrafficEvent) -> "SequenceStep":
        return cls(
            timestamp=event.timestamp,
            endpoint=event.endpoint_id,
            method=event.method,
            path=event.path,
            status_code=event.status_code,
        )


@dataclass
class BehaviorPattern:
    entity: EntityKey
    hours: list = field(default_factory=lambda: [0.0] * 24)
    weekdays: list = field(default_factory=lambda: [0.0] * 7)
    endpoints: dict = field(default_factory=dict)
    methods: dict = field(default_factory=dict)
    transitions: dict = field(default_factory=dict)
    sensitive_seen: dict = field(default_factory=dict)   # path -> last access, LRU order
    burst_mean: float = 0.0
    burst_variance: float = 0.0
    observations: int = 0
    batches: int = 0
    risk_score: float = 0.0
    first_seen: float | None = None
    last_update: float | None = None

    def fold(self, steps: list, settings: BehaviorSettings, previous: SequenceStep | None) -> None:
        """Merge one batch. Older counts decay by ``count_decay`` per batch."""
        # Resolve timestamps first so a bad one leaves the pattern untouched.
        stamps = [datetime.fromtimestamp(s.timestamp, tz=timezone.utc) for s in steps]
        keep = 1.0 - settings.count_decay
        self.hours = [c * keep for c in self.hours]
        self.weekdays = [c * keep for c in self.weekdays]
        for table in (self.endpoints, self.methods, self.transitions):
            for key in table:
                table[key] *= keep

        for step, dt in zip(steps, stamps):
            self.hours[dt.hour] += 1
            self.weekdays[dt.weekday()] += 1
            self.endpoints[step.endpoint] = self.endpoints.get(step.endpoint, 0.0) + 1
            self.methods[step.method] = self.methods.get(step.method, 0.0) + 1
            if step.path.startswith(tuple(settings.sensitive_paths)):
                self.sensitive_seen.pop(step.path, None)
                self.sensitive_seen[step.path] = step.timestamp
            if previous is not None:
                pair = (previous.endpoint, step.endpoint)
                self.transitions[pair] = self.transitions.get(pair, 0.0) + 1
            previous = step

        _trim(self.endpoints, settings.max_endpoints)
        _trim(self.transitions, settings.max_endpoints * 4)
        while len(self.sensitive_seen) > settings.max_endpoints:
            del self.sensitive_seen[next(iter(self.sensitive_seen))]

        rpm = _per_minute(steps)
        if self.batches == 0:
            self.burst_mean = rpm
        else:
            diff = rpm - self.burst_mean
            incr = _BURST_ALPHA * diff
            self.burst_mean += incr
            self.burst_variance = (1 - _BURST_ALPHA) * (self.burst_variance + diff * incr)

        if self.first_seen is None:
            self.first_seen = steps[0].timestamp
        self.last_update = steps[-1].timestamp
        self.observations += len(steps)
        self.batches += 1

    def copy(self) -> "BehaviorPattern":
        return replace(
            self,
            hours=list(self.hours),
            weekdays=list(self.weekdays),
            endpoints=dict(self.endpoints),
            methods=dict(self.methods),
            transitions=dict(self.transitions),
            sensitive_seen=dict(self.sensitive_seen),
        )


@dataclass(frozen=True)
class BehaviorAnomaly:
    feature: str
    deviation: float          # [0, 1]
    risk_factor: float        # [0, 100]
    severity: str
    evidence: str
    confidence: float = 1.0


def _trim(table: dict, limit: int) -> None:
    if len(table) <= limit:
        return
    for key, _ in sorted(table.items(), key=lambda kv: kv[1])[:len(table) - limit]:
        del table[key]


def _per_minute(steps) -> float:
    span = max(steps[-1].timestamp - steps[0].timestamp, 60.0)
    return len(steps) / span * 60.0


def _distribution(counts: dict) -> dict:
    total = sum(counts.values())
    if total <= 0:
        return {}
    return {k: v / total for k, v in counts.items()}


def jensen_shannon(p: dict, q: dict) -> float:
    """JS divergence in bits, so the result is in [0, 1]."""
    keys = set(p) | set(q)
    total = 0.0
    for k in keys:
        pk, qk = p.get(k, 0.0), q.get(k, 0.0)
        m = (pk + qk) / 2
        if pk > 0:
            total += 0.5 * pk * math.log2(pk / m)
        if qk > 0:
            total += 0.5 * qk * math.log2(qk / m)
    return min(1.0, max(0.0, total))


class _EntityBehavior:
    __slots__ = ("window", "pending", "bucket", "pattern", "last_folded")

    def __init__(self, entity: EntityKey, window_size: int):
        self.window: deque = deque(maxlen=window_size)
        self.pending: list = []
        self.bucket: int | None = None
        self.pattern = BehaviorPattern(entity)
        self.last_folded: SequenceStep | None = None


class BehavioralProfiler:

    def __init__(self, settings: BehaviorSettings | None = None,
                 aggregation=None):
        self.settings = settings or BehaviorSettings()
        self.aggregation = aggregation
        self._state = ShardedState(self.settings.shards)

    def configure(self, settings: BehaviorSettings, aggregation=None) -> None:
        self.settings = settings
        if aggregation is not None:
            self.aggregation = aggregation

    def _entry(self, data: dict, entity: EntityKey) -> _EntityBehavior:
        key = str(entity)
        entry = data.get(key)
        if entry is None:
            entry = data[key] = _EntityBehavior(entity, self.settings.window_size)
        return entry

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update(self, entity: EntityKey, step: SequenceStep) -> bool:
        """Record a step. Returns True if a batch was folded into the pattern."""
        with self._state.locked(str(entity)) as data:
            return self._update(self._entry(data, entity), step)

    def observe(self, entity: EntityKey, step: SequenceStep) -> list[BehaviorAnomaly]:
        """Evaluate the window plus *step* against the pattern, then record it."""
        with self._state.locked(str(entity)) as data:
            entry = self._entry(data, entity)
            anomalies = self._evaluate(entry, list(entry.window) + [step])
            self._update(entry, step)
            return anomalies

    def _update(self, entry: _EntityBehavior, step: SequenceStep) -> bool:
        folded = False
        bucket = int(step.timestamp // self.settings.bucket_seconds)
        if entry.pending and bucket != entry.bucket:
            self._fold(entry)
            folded = True
        entry.window.append(step)
        entry.pending.append(step)
        entry.bucket = bucket
        if len(entry.pending) >= self.settings.batch_size:
            self._fold(entry)
            folded = True
        return folded

    def _fold(self, entry: _EntityBehavior) -> None:
        steps = sorted(entry.pending, key=lambda s: s.timestamp)
        # A batch that fails to fold is discarded, never retried.
        entry.pending = []
        entry.pattern.fold(steps, self.settings, entry.last_folded)
        entry.last_folded = steps[-1]

    def flush(self, now: float | None = None) -> int:
        """Fold pending batches. With *now*, only batches whose bucket has closed."""
        current = None if now is None else int(now // self.settings.bucket_seconds)
        folded = 0
        for lock, data in self._state.each_locked():
            with lock:
                for entry in data.values():
                    if not entry.pending:
                        continue
                    if current is not None and entry.bucket == current:
                        continue
                    self._fold(entry)
                    folded += 1
        return folded

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def window(self, entity: EntityKey) -> list[SequenceStep]:
        with self._state.locked(str(entity)) as data:
            entry = data.get(str(entity))
            return list(entry.window) if entry else []

    def pattern(self, entity: EntityKey) -> BehaviorPattern | None:
        with self._state.locked(str(entity)) as data:
            entry = data.get(str(entity))
            return entry.pattern.copy() if entry else None

    def evaluate(self, entity: EntityKey,
                 current_window: list[SequenceStep] | None = None) -> list[BehaviorAnomaly]:
        with self._state.locked(str(entity)) as data:
            entry = self._entry(data, entity)
            steps = list(entry.window) if current_window is None else list(current_window)
            return self._evaluate(entry, steps)

    def _evaluate(self, entry: _EntityBehavior, steps: list) -> list[BehaviorAnomaly]:
        pattern = entry.pattern
        if pattern.observations < self.settings.min_observations or not steps:
            return []

        features = {
            "time_of_day": _time_of_day(pattern, steps),
            "endpoint_distribution": _divergence(pattern.endpoints, steps, "endpoint"),
            "method_distribution": _divergence(pattern.methods, steps, "method"),
            "transitions": _transitions(pattern, steps),
            "burst": _burst(pattern, steps),
            "sensitive_endpoint": _sensitive(pattern, steps, self.settings.sensitive_paths),
        }

        confidence = min(1.0, pattern.observations / (2.0 * self.settings.min_observations))
        anomalies = []
        for feature, (deviation, evidence) in features.items():
            if deviation <= self.settings.deviation_threshold:
                continue
            risk = round(deviation * FEATURE_RISK[feature], 2)
            anomalies.append(BehaviorAnomaly(
                feature=feature,
                deviation=round(deviation, 4),
                risk_factor=risk,
                severity=severity_for(risk, self.aggregation),
                evidence=evidence,
                confidence=confidence,
            ))
        pattern.risk_score = max((a.risk_factor for a in anomalies), default=0.0)
        return anomalies


# ---------------------------------------------------------------------------
# Features: each returns (deviation in [0, 1], evidence)
# ---------------------------------------------------------------------------

def _time_of_day(pattern: BehaviorPattern, steps) -> tuple[float, str]:
    total = sum(pattern.hours)
    if total <= 0:
        return 0.0, ""
    rare = [s for s in steps
            if pattern.hours[datetime.fromtimestamp(s.timestamp, tz=timezone.utc).hour]
            / total < _RARE_HOUR_SHARE]
    if not rare:
        return 0.0, ""
    hour = datetime.fromtimestamp(rare[-1].timestamp, tz=timezone.utc).hour
    return len(rare) / len(steps), f"{len(rare)}/{len(steps)} recent requests at rare hours (e.g. {hour:02d}:00 UTC)"


def _divergence(learned: dict, steps, attr: str) -> tuple[float, str]:
    if len(steps) < _MIN_WINDOW:
        return 0.0, ""
    recent: dict = {}
    for s in steps:
        key = getattr(s, attr)
        recent[key] = recent.get(key, 0) + 1
    js = jensen_shannon(_distribution(recent), _distribution(learned))
    top = max(recent, key=recent.get)
    return js, f"{attr} mix diverges from history (JS={js:.2f}, most frequent now: {top})"


def _transitions(pattern: BehaviorPattern, steps) -> tuple[float, str]:
    pairs = [(a.endpoint, b.endpoint) for a, b in zip(steps, steps[1:])]
    if len(pairs) < _MIN_WINDOW - 1:
        return 0.0, ""
    unseen = [p for p in pairs if pattern.transitions.get(p, 0.0) < 0.5]
    if not unseen:
        return 0.0, ""
    a, b = unseen[-1]
    return len(unseen) / len(pairs), f"{len(unseen)}/{len(pairs)} endpoint transitions never seen (e.g. {a} -> {b})"


def _burst(pattern: BehaviorPattern, steps) -> tuple[float, str]:
    last = steps[-1].timestamp
    observed = sum(1 for s in steps if last - s.timestamp < 60.0)
    std = math.sqrt(max(pattern.burst_variance, 0.0))
    if observed <= pattern.burst_mean + 2 * std or observed <= 0:
        return 0.0, ""
    deviation = 1.0 - pattern.burst_mean / observed
    return deviation, f"{observed} requests in the last minute vs ~{pattern.burst_mean:.1f}/min learned"


def _sensitive(pattern: BehaviorPattern, steps, sensitive_paths) -> tuple[float, str]:
    path = steps[-1].path
    if not path.startswith(tuple(sensitive_paths)):
        return 0.0, ""
    if path in pattern.sensitive_seen or any(s.path == path for s in steps[:-1]):
        return 0.0, ""
    return 1.0, f"first access to sensitive endpoint {path}"
