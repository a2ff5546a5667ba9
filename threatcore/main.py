"""Threat detection service: reads traffic events, runs the engine, produces verdicts.

Consumes normalized API-traffic events from the input topic, evaluates each
one with the threat engine on per-entity worker shards, and publishes
verdicts to the verdicts topic.  Automated feedback (e.g. from a
downstream SOAR) arrives on the feedback topic; analysts use the HTTP API.

Usage:
    python -m threatcore.main
    python -m threatcore.main --bootstrap-servers kafka-1:29092 --config /etc/threatcore/engine.yml

Send SIGHUP to re-read the config file; a version that is not newer than
the running one is rejected and the service keeps its current config.
"""

import argparse
import json
import logging
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from threatcore.api import start_api_server
from threatcore.config import load_config
from threatcore.emitter import KafkaAlertEmitter
from threatcore.engine import EventDispatcher, ThreatEngine
from threatcore.errors import ConfigError, UnknownVerdict
from threatcore.events import parse_timestamp

running = True
reload_requested = False

_MAINTENANCE_SECONDS = 30.0


def _shutdown(sig, frame):
    global running
    print("\nShutting down threat engine...")
    running = False


def _request_reload(sig, frame):
    global reload_requested
    reload_requested = True


def _ensure_topic(bootstrap_servers, topic, partitions=3, replication=3):
    """Create a topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=partitions,
                                       replication_factor=replication)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def _reload(engine: ThreatEngine, path: str | None) -> None:
    """Re-read the config file and publish it if its version is newer."""
    try:
        config = engine.reload_config(load_config(path))
    except ConfigError as e:
        print(f"Config reload rejected: {e}", file=sys.stderr)
        return
    print(f"Config reloaded: v{config.version}, rule set v{engine.signatures.snapshot.version}")


def handle_feedback_message(engine: ThreatEngine, raw: bytes) -> bool:
    """Queue one feedback record from the feedback topic. False if rejected."""
    try:
        data = json.loads(raw)
        verdict_id = data["verdict_id"]
        false_positive = data["false_positive"]
        submitted_at = data.get("submitted_at")
        if submitted_at is not None:
            submitted_at = parse_timestamp(submitted_at)
    except (ValueError, KeyError, TypeError) as e:
        print(f"Bad feedback message: {e!r}", file=sys.stderr)
        return False
    if not isinstance(false_positive, bool):
        print(f"Bad feedback message: false_positive={false_positive!r}", file=sys.stderr)
        return False
    try:
        engine.feedback.submit(verdict_id, false_positive, str(data.get("notes", "")),
                               submitted_at, data.get("source", "automated"))
    except UnknownVerdict:
        print(f"Feedback for unknown verdict {verdict_id}", file=sys.stderr)
        return False
    return True


def main():
    global reload_requested
    parser = argparse.ArgumentParser(description="Threat detection engine")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="api-traffic-events")
    parser.add_argument("--verdict-topic", default="threat-verdicts")
    parser.add_argument("--feedback-topic", default="verdict-feedback")
    parser.add_argument("--group-id", default="threat-engine")
    parser.add_argument("--config", default=None,
                        help="engine config YAML (default: $CONFIG_PATH, then built-in defaults)")
    parser.add_argument("--workers", type=int, default=4, help="per-entity worker shards")
    parser.add_argument("--metrics-port", type=int, default=9100)
    parser.add_argument("--api-port", type=int, default=8080)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGHUP, _request_reload)

    try:
        config = load_config(args.config)
        engine = ThreatEngine(
            config,
            emitter=KafkaAlertEmitter(args.verdict_topic, args.bootstrap_servers),
        )
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    _ensure_topic(args.bootstrap_servers, args.verdict_topic)
    _ensure_topic(args.bootstrap_servers, args.feedback_topic)

    start_http_server(args.metrics_port)
    api = start_api_server(engine, port=args.api_port)
    engine.feedback.start()
    dispatcher = EventDispatcher(engine, workers=args.workers)
    dispatcher.start()

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic, args.feedback_topic])

    stats = engine.signatures.statistics()
    print(f"Threat engine started  input={args.input_topic}  "
          f"verdicts={args.verdict_topic}  feedback={args.feedback_topic}  "
          f"signatures={stats['enabled']}/{stats['total_signatures']}  "
          f"workers={args.workers}  config=v{config.version}")
    print(f"Metrics on :{args.metrics_port}  API on :{args.api_port}")

    received = 0
    last_maintenance = time.time()

    try:
        while running:
            msg = consumer.poll(1.0)

            if reload_requested:
                reload_requested = False
                _reload(engine, args.config)

            if time.time() - last_maintenance >= _MAINTENANCE_SECONDS:
                last_maintenance = time.time()
                try:
                    engine.maintenance()
                    engine.emitter.flush()
                except Exception as e:
                    print(f"Maintenance failed: {e!r}", file=sys.stderr)

            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            if msg.topic() == args.feedback_topic:
                handle_feedback_message(engine, msg.value())
                continue

            received += 1
            try:
                dispatcher.submit(msg.value())
            except Exception as e:
                print(f"Failed to dispatch event at offset {msg.offset()}: {e!r}", file=sys.stderr)
                engine.drop("dispatch_error", repr(e))

            if received % 500 == 0:
                s = engine.stats
                print(f"  ... {received} events received, {s['consumed']} processed, "
                      f"{s['verdicts']} verdicts, {s['dropped']} dropped, "
                      f"{s['degraded']} degraded detector runs")
    finally:
        dispatcher.join()
        dispatcher.stop()
        engine.feedback.stop()
        api.shutdown()
        consumer.close()
        engine.close()
        s = engine.stats
        print(f"Done. {s['consumed']} events processed, {s['verdicts']} verdicts, "
              f"{s['dropped']} dropped, {s['duplicates']} duplicates.")


if __name__ == "__main__":
    main()
