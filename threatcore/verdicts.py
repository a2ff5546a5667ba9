"""Verdict records and their status state machine.

    new ──► investigating ──► resolved
     │            │
     └────────────┴─────────► false_positive

``resolved`` and ``false_positive`` are terminal.  A terminal verdict only
changes by gaining feedback annotations; reopening it creates a new verdict
linked through ``parent_id``.

Verdict ids are uuid5 of the request id, so a redelivered event produces
the same id and the store ignores the second copy.
"""

import json
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum

from threatcore.config import AggregationSettings
from threatcore.errors import InvalidTransition, UnknownVerdict
from threatcore.events import format_timestamp

_VERDICT_NAMESPACE = uuid.UUID("6f1c2a4e-9b7d-4c1e-8a53-2f0d7e6b9c41")


class VerdictStatus(str, Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


VALID_TRANSITIONS = {
    VerdictStatus.NEW: {VerdictStatus.INVESTIGATING, VerdictStatus.FALSE_POSITIVE},
    VerdictStatus.INVESTIGATING: {VerdictStatus.RESOLVED, VerdictStatus.FALSE_POSITIVE},
    VerdictStatus.RESOLVED: set(),
    VerdictStatus.FALSE_POSITIVE: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)


def severity_for(score: float, settings: AggregationSettings | None = None) -> str:
    """Bucket a [0, 100] score. A score exactly on a threshold takes the lower bucket."""
    settings = settings or AggregationSettings()
    if score > settings.critical_threshold:
        return "critical"
    if score > settings.high_threshold:
        return "high"
    if score > settings.medium_threshold:
        return "medium"
    return "low"


def verdict_id_for(request_id: str, generation: int = 0) -> str:
    name = request_id if generation == 0 else f"{request_id}#reopen-{generation}"
    return str(uuid.uuid5(_VERDICT_NAMESPACE, name))


@dataclass(frozen=True)
class Indicator:
    kind: str                # signature | deviation | behavioral
    id: str
    detail: str
    contribution: float
    confidence: float = 1.0

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.id,
            "detail": self.detail,
            "contribution": round(self.contribution, 2),
        }


@dataclass(frozen=True)
class Verdict:
    verdict_id: str
    type: str                # threat | anomaly
    severity: str
    risk_score: float
    confidence: float
    status: VerdictStatus
    indicators: tuple
    entity: dict
    detected_at: float
    request_id: str
    degraded: tuple = ()
    parent_id: str | None = None
    annotations: tuple = ()
    generation: int = 0

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def signature_ids(self) -> list[str]:
        return [i.id for i in self.indicators if i.kind == "signature"]

    def to_dict(self) -> dict:
        out = {
            "verdict_id": self.verdict_id,
            "type": self.type,
            "severity": self.severity,
            "risk_score": round(self.risk_score, 2),
            "confidence": round(self.confidence, 3),
            "status": self.status.value,
            "indicators": [i.to_dict() for i in self.indicators],
            "entity": dict(self.entity),
            "detected_at": format_timestamp(self.detected_at),
            "request_id": self.request_id,
            "degraded": [dict(d) for d in self.degraded],
        }
        if self.parent_id:
            out["parent_id"] = self.parent_id
        if self.annotations:
            out["feedback"] = [dict(a) for a in self.annotations]
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class VerdictStore:
    """Recent verdicts by id, bounded. Oldest verdicts fall out first."""

    def __init__(self, max_verdicts: int = 100_000):
        self.max_verdicts = max_verdicts
        self._verdicts: OrderedDict[str, Verdict] = OrderedDict()
        self._lock = threading.Lock()

    def add(self, verdict: Verdict) -> bool:
        """Store a verdict. False if one with the same id already exists."""
        with self._lock:
            if verdict.verdict_id in self._verdicts:
                return False
            self._verdicts[verdict.verdict_id] = verdict
            while len(self._verdicts) > self.max_verdicts:
                self._verdicts.popitem(last=False)
            return True

    def get(self, verdict_id: str) -> Verdict:
        with self._lock:
            verdict = self._verdicts.get(verdict_id)
        if verdict is None:
            raise UnknownVerdict(verdict_id)
        return verdict

    def transition(self, verdict_id: str, status: str | VerdictStatus) -> Verdict:
        try:
            requested = VerdictStatus(status)
        except ValueError:
            raise InvalidTransition(verdict_id, "?", str(status)) from None
        with self._lock:
            current = self._require(verdict_id)
            if requested not in VALID_TRANSITIONS[current.status]:
                raise InvalidTransition(verdict_id, current.status.value, requested.value)
            updated = replace(current, status=requested)
            self._verdicts[verdict_id] = updated
            return updated

    def annotate(self, verdict_id: str, annotation: dict) -> Verdict:
        """Attach feedback to a verdict. Allowed in every status, terminal included."""
        with self._lock:
            current = self._require(verdict_id)
            updated = replace(current, annotations=current.annotations + (dict(annotation),))
            self._verdicts[verdict_id] = updated
            return updated

    def reopen(self, verdict_id: str, now: float) -> Verdict:
        """New ``new`` verdict linked to a terminal one."""
        with self._lock:
            parent = self._require(verdict_id)
            if not parent.terminal:
                raise InvalidTransition(verdict_id, parent.status.value, "reopen")
            generation = parent.generation + 1
            existing = self._verdicts.get(verdict_id_for(parent.request_id, generation))
            if existing is not None:
                return existing
            child = replace(
                parent,
                verdict_id=verdict_id_for(parent.request_id, generation),
                status=VerdictStatus.NEW,
                detected_at=now,
                parent_id=parent.verdict_id,
                annotations=(),
                generation=generation,
            )
            self._verdicts[child.verdict_id] = child
            return child

    def _require(self, verdict_id: str) -> Verdict:
        verdict = self._verdicts.get(verdict_id)
        if verdict is None:
            raise UnknownVerdict(verdict_id)
        return verdict

    def __contains__(self, verdict_id: str) -> bool:
        with self._lock:
            return verdict_id in self._verdicts

    def __len__(self) -> int:
        with self._lock:
            return len(self._verdicts)
