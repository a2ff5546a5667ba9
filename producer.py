"""API traffic event generator.

Simulates normalized API-gateway traffic with configurable normal and
hostile client profiles, in the inbound event shape the threat engine
consumes (request_id, timestamp, entity, api_id, endpoint_id, method, path,
headers, payload_size, status_code, plus query/body/geo when present).

Usage:
    python producer.py
    python producer.py --normal 20 --sqli-clients 2 --scanners 1 --bursters 1
    python producer.py --eps 100 --topic api-traffic-events
"""

import argparse
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass, field

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

from threatcore.events import format_timestamp

API_ID = "storefront-api"

# (endpoint_id, method, path, payload range)
ENDPOINTS = [
    ("list-products", "GET", "/v1/products", (0, 0)),
    ("get-product", "GET", "/v1/products/{id}", (0, 0)),
    ("search", "GET", "/v1/search", (0, 0)),
    ("get-cart", "GET", "/v1/cart", (0, 0)),
    ("add-to-cart", "POST", "/v1/cart/items", (80, 400)),
    ("checkout", "POST", "/v1/checkout", (300, 2000)),
    ("login", "POST", "/v1/auth/login", (60, 200)),
]
SENSITIVE = [
    ("admin-users", "GET", "/admin/users", (0, 0)),
    ("internal-config", "GET", "/internal/config", (0, 0)),
]
SQLI_PAYLOADS = [
    "q=' OR 1=1 --",
    "q=1 UNION SELECT username, password FROM users",
    "id=5; DROP TABLE orders",
    "q=shoes' UNION ALL SELECT null, version() --",
]
SCANNER_AGENTS = ["sqlmap/1.7.2#stable", "Nikto/2.5.0", "Mozilla/5.0 (compatible; Nuclei)"]
BROWSER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Safari/605.1",
    "okhttp/4.12.0",
]
COUNTRIES = ["US", "DE", "GB", "FR", "JP", "BR", "IN"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


# ---------------------------------------------------------------------------
# Client profiles
# ---------------------------------------------------------------------------

@dataclass
class Client:
    ip: str
    user_id: str | None
    role: str  # normal | sqli | scanner | burster
    events_per_min: float
    user_agent: str
    country: str
    favourite_endpoints: list = field(default_factory=list)


def _ip(i: int) -> str:
    return f"10.{(i >> 16) & 255}.{(i >> 8) & 255}.{i & 255}"


def _create_clients(n_normal, n_sqli, n_scanners, n_bursters):
    """Build the client pool. Each client gets a stable IP, country and UA."""
    clients = []
    cid = 0

    # --- Normal users: authenticated, stick to a handful of endpoints ---
    for _ in range(n_normal):
        cid += 1
        clients.append(Client(
            ip=_ip(cid), user_id=f"user_{cid:04d}", role="normal",
            events_per_min=random.uniform(5, 60),
            user_agent=random.choice(BROWSER_AGENTS),
            country=random.choice(COUNTRIES),
            favourite_endpoints=random.sample(ENDPOINTS, k=4),
        ))

    # --- SQL injection: anonymous, search/product endpoints, crafted queries ---
    for _ in range(n_sqli):
        cid += 1
        clients.append(Client(
            ip=_ip(cid), user_id=None, role="sqli",
            events_per_min=random.uniform(10, 40),
            user_agent=random.choice(BROWSER_AGENTS),
            country=random.choice(COUNTRIES),
            favourite_endpoints=[ENDPOINTS[1], ENDPOINTS[2]],
        ))

    # --- Scanners: tool user agents, every endpoint plus sensitive ones ---
    for _ in range(n_scanners):
        cid += 1
        clients.append(Client(
            ip=_ip(cid), user_id=None, role="scanner",
            events_per_min=random.uniform(60, 200),
            user_agent=random.choice(SCANNER_AGENTS),
            country=random.choice(COUNTRIES),
            favourite_endpoints=ENDPOINTS + SENSITIVE,
        ))

    # --- Bursters: normal-looking users that periodically flood one endpoint ---
    for _ in range(n_bursters):
        cid += 1
        clients.append(Client(
            ip=_ip(cid), user_id=f"user_{cid:04d}", role="burster",
            events_per_min=random.uniform(200, 600),
            user_agent=random.choice(BROWSER_AGENTS),
            country=random.choice(COUNTRIES),
            favourite_endpoints=[ENDPOINTS[6]],
        ))

    return clients


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def make_event(client: Client, now: float | None = None) -> dict:
    """Generate one normalized traffic event for a client."""
    ts = time.time() if now is None else now
    endpoint_id, method, path, (lo, hi) = random.choice(client.favourite_endpoints)
    path = path.replace("{id}", str(random.randint(1, 5000)))
    query = ""
    status = 200

    if client.role == "sqli" and random.random() < 0.7:
        query = random.choice(SQLI_PAYLOADS)
    elif client.role == "scanner":
        status = random.choice([200, 401, 403, 404, 404, 404])
    elif endpoint_id == "login" and random.random() < 0.05:
        status = 401

    entity = {"ip": client.ip}
    if client.user_id:
        entity["user_id"] = client.user_id
        entity["session_id"] = f"sess_{client.user_id}"

    event = {
        "request_id": f"req_{uuid.uuid4().hex[:16]}",
        "timestamp": format_timestamp(ts),
        "entity": entity,
        "api_id": API_ID,
        "endpoint_id": endpoint_id,
        "method": method,
        "path": path,
        "headers": {"User-Agent": client.user_agent},
        "payload_size": random.randint(lo, hi),
        "status_code": status,
        "response_time_ms": round(random.uniform(20, 250), 1),
        "geo": {"country": client.country},
    }
    if query:
        event["query"] = query
    if method == "POST":
        event["headers"]["Content-Type"] = "application/json"
    return event


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="API traffic event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="api-traffic-events")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--sqli-clients", type=int, default=1)
    parser.add_argument("--scanners", type=int, default=1)
    parser.add_argument("--bursters", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
    signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination

    clients = _create_clients(args.normal, args.sqli_clients, args.scanners, args.bursters)
    weights = [c.events_per_min for c in clients]

    print(f"Generating to topic '{args.topic}' at ~{args.eps} events/sec")
    print(f"Clients: {len(clients)} total")
    for c in clients:
        print(f"  {c.ip:<14s} {c.role:<8s} ~{c.events_per_min:>6.0f} epm  "
              f"user={c.user_id or '-'}  country={c.country}")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "api-traffic-generator",
    })

    count = 0
    delay = 1.0 / args.eps

    while running:
        client = random.choices(clients, weights=weights, k=1)[0]
        event = make_event(client)

        producer.produce(
            topic=args.topic,
            key=(client.user_id or client.ip).encode(),
            value=json.dumps(event),
        )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} events produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
