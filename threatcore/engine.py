"""Threat engine: evaluates events against every detector, one verdict out.

Pure business logic, no Kafka dependency.  The service feeds raw event
payloads in (``process_raw``) and the configured emitter publishes the
resulting verdicts.

Per event:
  1. Parse   - raw JSON -> TrafficEvent; malformed events are dropped and
               counted by reason, never retried
  2. Dedup   - request ids already seen are skipped (at-least-once input)
  3. Fan out - every detector runs on the thread pool
  4. Fan in  - wait at most ``detector_timeout``; late or failing
               detectors are recorded as degraded and contribute nothing
  5. Combine - the risk aggregator builds the verdict (or none)
  6. Emit    - new verdicts are stored and handed to the emitter

``EventDispatcher`` sits in front of the engine and routes each event to
one of N single-thread workers by ``crc32(primary entity) % N``: events for
the same entity serialize, different entities run in parallel.
"""

import logging
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, wait

from threatcore import metrics
from threatcore.aggregator import RiskAggregator
from threatcore.anomaly import AnomalyScorer
from threatcore.baseline import BaselineStore
from threatcore.behavior import BehavioralProfiler
from threatcore.config import ConfigHolder, EngineConfig
from threatcore.detectors import (
    AnomalyDetector,
    BehavioralDetector,
    Detector,
    DetectorResult,
    SignatureDetector,
)
from threatcore.emitter import AlertEmitter, MemoryAlertEmitter
from threatcore.errors import DetectorTimeout, InvalidEvent
from threatcore.events import TrafficEvent
from threatcore.feedback import FeedbackLoop
from threatcore.sharding import shard_index
from threatcore.signatures.engine import SignatureEngine
from threatcore.signatures.loader import load_builtin_signatures, load_signature_sets
from threatcore.verdicts import Verdict, VerdictStore

logger = logging.getLogger(__name__)


class ThreatEngine:

    def __init__(self, config: EngineConfig | ConfigHolder | None = None,
                 definitions: list[dict] | None = None,
                 emitter: AlertEmitter | None = None,
                 detectors: list[Detector] | None = None,
                 dedup_size: int = 100_000):
        if isinstance(config, ConfigHolder):
            self.config_holder = config
        else:
            self.config_holder = ConfigHolder(config)
        config = self.config_holder.current

        # Explicit definitions pin the rule set; otherwise it is rebuilt from
        # the builtin set plus signature_paths on every config reload.
        self._definitions = definitions
        self.signatures = SignatureEngine(
            self._load_definitions(config), overrides=config.signature_overrides,
        )
        self.baselines = BaselineStore(config.baseline)
        self.scorer = AnomalyScorer(self.baselines)
        self.profiler = BehavioralProfiler(config.behavior, config.aggregation)
        self.aggregator = RiskAggregator(config.aggregation, config.metric_weights)
        self.verdicts = VerdictStore()
        self.feedback = FeedbackLoop(self.signatures, self.verdicts, self.config_holder)
        self.emitter = emitter or MemoryAlertEmitter()
        self.detectors = detectors or [
            SignatureDetector(self.signatures),
            AnomalyDetector(self.scorer),
            BehavioralDetector(self.profiler),
        ]

        self._executor = ThreadPoolExecutor(
            max_workers=max(4, 4 * len(self.detectors)),
            thread_name_prefix="detector",
        )
        self._seen: OrderedDict[str, bool] = OrderedDict()
        self._seen_lock = threading.Lock()
        self._dedup_size = dedup_size
        self._stats_lock = threading.Lock()
        self.stats = {
            "consumed": 0,
            "dropped": 0,
            "duplicates": 0,
            "verdicts": 0,
            "degraded": 0,
        }

        self.config_holder.subscribe(self._apply_config)
        metrics.rule_set_version.set(self.signatures.snapshot.version)

    def _load_definitions(self, config: EngineConfig) -> list[dict]:
        if self._definitions is not None:
            return list(self._definitions)
        return load_builtin_signatures() + load_signature_sets(config.signature_paths)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def reload_config(self, config: EngineConfig) -> EngineConfig:
        """Publish a newer config. Raises ConfigError for stale versions."""
        return self.config_holder.reload(config)

    def _apply_config(self, config: EngineConfig) -> None:
        self.signatures.load(self._load_definitions(config),
                             overrides=config.signature_overrides)
        self.scorer.configure(config.baseline)
        self.profiler.configure(config.behavior, config.aggregation)
        self.aggregator.configure(config.aggregation, config.metric_weights)
        metrics.rule_set_version.set(self.signatures.snapshot.version)
        logger.info("Applied config version %d", config.version)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def parse(self, raw: bytes | str) -> TrafficEvent | None:
        """Raw payload -> event, or None after counting the drop."""
        try:
            return TrafficEvent.from_json(raw)
        except InvalidEvent as e:
            self.drop("invalid_event", e.reason, e.request_id)
            return None
        except Exception as e:
            logger.exception("Unparseable event payload")
            self.drop("parse_error", repr(e))
            return None

    def drop(self, reason: str, detail: str = "", request_id: str | None = None) -> None:
        self._bump("dropped")
        metrics.events_dropped_total.labels(reason=reason).inc()
        logger.warning("Dropped event %s: %s %s", request_id or "?", reason, detail)

    def process_raw(self, raw: bytes | str) -> Verdict | None:
        event = self.parse(raw)
        if event is None:
            return None
        return self.process(event)

    def process(self, event: TrafficEvent) -> Verdict | None:
        if self._is_duplicate(event.request_id):
            self._bump("duplicates")
            metrics.events_dropped_total.labels(reason="duplicate").inc()
            logger.debug("Skipping redelivered event %s", event.request_id)
            return None

        start = time.perf_counter()
        self._bump("consumed")
        metrics.events_total.inc()

        results = self.run_detectors(event)
        verdict = self.aggregator.combine(results, event, expected=len(self.detectors))
        if verdict is not None and self.verdicts.add(verdict):
            self.emitter.emit(verdict)
            self._bump("verdicts")
            metrics.verdicts_total.labels(type=verdict.type, severity=verdict.severity).inc()
            metrics.verdict_risk_score.observe(verdict.risk_score)

        metrics.event_latency.observe(time.perf_counter() - start)
        return verdict

    def run_detectors(self, event: TrafficEvent) -> list[DetectorResult]:
        timeout = self.config_holder.current.detector_timeout
        futures = {
            self._executor.submit(self._timed, detector, event): detector
            for detector in self.detectors
        }
        done, _ = wait(futures, timeout=timeout)

        results = []
        for future, detector in futures.items():
            if future not in done:
                future.cancel()
                err = DetectorTimeout(detector.name, timeout)
                results.append(self._degraded(detector, "timeout", str(err), event))
                continue
            try:
                results.append(future.result())
            except Exception as e:
                results.append(self._degraded(detector, "error", repr(e), event))
        return results

    @staticmethod
    def _timed(detector: Detector, event: TrafficEvent) -> DetectorResult:
        start = time.perf_counter()
        try:
            return detector.evaluate(event)
        finally:
            metrics.detector_latency.labels(detector=detector.name).observe(
                time.perf_counter() - start)

    def _degraded(self, detector, reason, detail, event) -> DetectorResult:
        self._bump("degraded")
        metrics.detector_degraded_total.labels(detector=detector.name, reason=reason).inc()
        logger.warning("Detector %s degraded on %s: %s", detector.name, event.request_id, detail)
        return DetectorResult.failed(detector.name, detail)

    def _is_duplicate(self, request_id: str) -> bool:
        with self._seen_lock:
            if request_id in self._seen:
                self._seen.move_to_end(request_id)
                return True
            self._seen[request_id] = True
            if len(self._seen) > self._dedup_size:
                self._seen.popitem(last=False)
            return False

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self.stats[name] += 1

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def maintenance(self, now: float | None = None) -> None:
        """Fold closed behavior batches and age idle baselines."""
        now = time.time() if now is None else now
        self.profiler.flush(now)
        self.baselines.age(now)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.emitter.close()


class EventDispatcher:
    """Route events to per-shard worker threads by primary entity."""

    def __init__(self, engine: ThreatEngine, workers: int = 4, queue_size: int = 1000):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.engine = engine
        self._queues = [queue.Queue(maxsize=queue_size) for _ in range(workers)]
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for i, q in enumerate(self._queues):
            t = threading.Thread(target=self._run, args=(q,), name=f"worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, raw: bytes | str) -> bool:
        """Parse and enqueue. Blocks when the target worker is backed up."""
        event = self.engine.parse(raw)
        if event is None:
            return False
        self.dispatch(event)
        return True

    def dispatch(self, event: TrafficEvent) -> int:
        index = shard_index(event.primary_entity(), len(self._queues))
        self._queues[index].put(event)
        metrics.dispatch_queue_depth.inc()
        return index

    def _run(self, q: queue.Queue) -> None:
        while True:
            event = q.get()
            try:
                if event is None:
                    return
                metrics.dispatch_queue_depth.dec()
                self.engine.process(event)
            except Exception:
                logger.exception("Worker failed on event %s", getattr(event, "request_id", "?"))
                metrics.events_dropped_total.labels(reason="processing_error").inc()
            finally:
                q.task_done()

    def join(self) -> None:
        """Block until every dispatched event has been processed."""
        for q in self._queues:
            q.join()

    def stop(self) -> None:
        for q in self._queues:
            q.put(None)
        for t in self._threads:
            t.join()
        self._threads = []
