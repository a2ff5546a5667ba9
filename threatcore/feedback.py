"""Feedback loop: analyst (or automated) verdict labels tune signature weights.

    false positive  ->  each matched signature loses ``step`` weight,
                        floored at ``min_weight``; its FP counter increments
    true positive   ->  each matched signature gains ``step`` weight,
                        capped at ``max_weight``

Baselines are never touched: a false positive says the *signature* was
wrong, not that the entity's traffic was abnormal.  Weight changes go
through ``SignatureEngine.adjust_weights``, which publishes a new rule-set
snapshot, so scoring in flight never sees a half-applied update.

Feedback is idempotent per ``(verdict_id, submitted_at)``, or per
``(verdict_id, false_positive, notes)`` when the submitter sends no
timestamp.  A redelivered record changes nothing.

``submit`` is the non-blocking entry point: it validates the verdict id
synchronously (unknown verdicts are a client error) and hands the record
to a background worker.
"""

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass

from threatcore import metrics
from threatcore.config import ConfigHolder, FeedbackSettings
from threatcore.errors import DuplicateFeedback, UnknownVerdict
from threatcore.events import format_timestamp
from threatcore.signatures.engine import SignatureEngine
from threatcore.verdicts import VerdictStore

logger = logging.getLogger(__name__)

SOURCES = ("analyst", "automated")


def idempotency_key(verdict_id: str, false_positive: bool, notes: str,
                    submitted_at: float | None) -> tuple:
    if submitted_at is not None:
        return (verdict_id, float(submitted_at))
    return (verdict_id, bool(false_positive), notes)


@dataclass(frozen=True)
class Feedback:
    feedback_id: str
    verdict_id: str
    false_positive: bool
    notes: str
    submitted_at: float | None
    received_at: float
    source: str
    signature_ids: tuple
    key: tuple

    def to_dict(self) -> dict:
        return {
            "feedback_id": self.feedback_id,
            "verdict_id": self.verdict_id,
            "false_positive": self.false_positive,
            "notes": self.notes,
            "submitted_at": (format_timestamp(self.submitted_at)
                             if self.submitted_at is not None else None),
            "source": self.source,
            "signature_ids": list(self.signature_ids),
        }


class FeedbackLoop:

    def __init__(self, signatures: SignatureEngine, verdicts: VerdictStore,
                 settings: FeedbackSettings | ConfigHolder | None = None):
        self.signatures = signatures
        self.verdicts = verdicts
        self._settings = settings or FeedbackSettings()
        self._lock = threading.Lock()
        self._records: list[Feedback] = []
        self._keys: dict[tuple, Feedback] = {}
        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None

    @property
    def settings(self) -> FeedbackSettings:
        if isinstance(self._settings, ConfigHolder):
            return self._settings.current.feedback
        return self._settings

    # ------------------------------------------------------------------
    # Synchronous application
    # ------------------------------------------------------------------

    def apply_feedback(self, verdict_id: str, false_positive: bool, notes: str = "",
                       submitted_at: float | None = None,
                       source: str = "analyst") -> Feedback:
        """Record feedback and adjust weights.

        Raises UnknownVerdict for a verdict we never produced and
        DuplicateFeedback when the same feedback was already applied.
        """
        verdict = self.verdicts.get(verdict_id)
        key = idempotency_key(verdict_id, false_positive, notes, submitted_at)
        settings = self.settings

        with self._lock:
            if key in self._keys:
                metrics.feedback_total.labels(outcome="duplicate").inc()
                raise DuplicateFeedback(key)

            record = Feedback(
                feedback_id=str(uuid.uuid4()),
                verdict_id=verdict_id,
                false_positive=bool(false_positive),
                notes=notes,
                submitted_at=submitted_at,
                received_at=time.time(),
                source=source if source in SOURCES else "analyst",
                signature_ids=tuple(verdict.signature_ids()),
                key=key,
            )

            if record.signature_ids:
                delta = -settings.step if false_positive else settings.step
                self.signatures.adjust_weights(
                    {sig_id: delta for sig_id in record.signature_ids},
                    settings.min_weight,
                    settings.max_weight,
                )
                if false_positive:
                    self.signatures.record_false_positive(record.signature_ids)

            self._keys[key] = record
            self._records.append(record)

        self.verdicts.annotate(verdict_id, record.to_dict())
        metrics.feedback_total.labels(
            outcome="false_positive" if false_positive else "true_positive",
        ).inc()
        logger.info("Feedback %s on verdict %s (false_positive=%s, signatures=%s)",
                    record.feedback_id, verdict_id, false_positive,
                    ",".join(record.signature_ids) or "-")
        return record

    def records(self, verdict_id: str | None = None) -> list[Feedback]:
        with self._lock:
            if verdict_id is None:
                return list(self._records)
            return [r for r in self._records if r.verdict_id == verdict_id]

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def submit(self, verdict_id: str, false_positive: bool, notes: str = "",
               submitted_at: float | None = None, source: str = "analyst") -> tuple:
        """Queue feedback for the worker. Raises UnknownVerdict immediately."""
        if verdict_id not in self.verdicts:
            raise UnknownVerdict(verdict_id)
        self._queue.put((verdict_id, false_positive, notes, submitted_at, source))
        return idempotency_key(verdict_id, false_positive, notes, submitted_at)

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="feedback", daemon=True)
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout)
        self._worker = None

    def join(self) -> None:
        """Block until every queued feedback item has been processed."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self.apply_feedback(*item)
            except DuplicateFeedback as e:
                logger.debug("Ignoring duplicate feedback %r", e.key)
            except UnknownVerdict as e:
                logger.warning("Feedback for unknown verdict %s dropped", e.verdict_id)
                metrics.feedback_total.labels(outcome="unknown_verdict").inc()
            except Exception:
                logger.exception("Feedback worker failed on %r", item)
                metrics.feedback_total.labels(outcome="error").inc()
            finally:
                self._queue.task_done()
