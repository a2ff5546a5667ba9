"""Alert emitters: where verdicts go once the engine has produced them.

``KafkaAlertEmitter`` publishes to the verdicts topic, keyed by the entity
so one entity's verdicts stay ordered within a partition.  The producer
buffers internally; ``flush`` is called periodically by the service loop.

``MemoryAlertEmitter`` keeps verdicts in a list, for local runs and tests.
"""

import logging
import threading

from confluent_kafka import Producer

from threatcore.verdicts import Verdict

logger = logging.getLogger(__name__)


class AlertEmitter:
    """Base emitter. Subclass and implement emit()."""

    def emit(self, verdict: Verdict) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.flush()


class KafkaAlertEmitter(AlertEmitter):

    def __init__(self, topic: str, bootstrap_servers: str | None = None,
                 producer: Producer | None = None):
        self.topic = topic
        self.producer = producer or Producer({"bootstrap.servers": bootstrap_servers})
        self.delivered = 0
        self.failed = 0

    def _on_delivery(self, err, msg):
        if err is not None:
            self.failed += 1
            logger.error("Verdict delivery failed: %s", err)
        else:
            self.delivered += 1

    def emit(self, verdict: Verdict) -> None:
        entity = verdict.entity
        key = entity.get("user_id") or entity.get("ip") or verdict.verdict_id
        self.producer.produce(
            self.topic,
            key=key,
            value=verdict.to_json().encode("utf-8"),
            on_delivery=self._on_delivery,
        )
        self.producer.poll(0)

    def flush(self) -> None:
        self.producer.flush()


class MemoryAlertEmitter(AlertEmitter):

    def __init__(self):
        self._lock = threading.Lock()
        self._verdicts: list[Verdict] = []

    def emit(self, verdict: Verdict) -> None:
        with self._lock:
            self._verdicts.append(verdict)

    @property
    def verdicts(self) -> list[Verdict]:
        with self._lock:
            return list(self._verdicts)
