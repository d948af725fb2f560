"""Publish an order event directly to a Kafka topic.

Useful for replaying a `payments.confirmed` fact by hand and for
duplicate-event testing against the fulfillment consumer.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from aiokafka import AIOKafkaProducer

PAYMENTS_CONFIRMED = "payments.confirmed"


async def publish(bootstrap_servers: str, topic: str, payload: dict) -> None:
    """Open producer, publish one message keyed by order, close producer."""

    key = payload.get("aggregate_id")
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(
            topic,
            json.dumps(payload).encode("utf-8"),
            key=key.encode("utf-8") if isinstance(key, str) else None,
        )
    finally:
        await producer.stop()


def payment_confirmed(order_id: str, provider: str, provider_ref: str, amount: str, event_id: str | None) -> dict:
    """Envelope in the shape the fulfillment consumer expects."""

    return {
        "event_id": event_id or str(uuid4()),
        "event_type": PAYMENTS_CONFIRMED,
        "aggregate_id": order_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": "manual-publish",
        "payload": {
            "provider": provider,
            "provider_ref": provider_ref,
            "charged_amount": amount,
            "currency": "USD",
        },
    }


def main() -> None:
    """Parse CLI args and publish one event."""

    parser = argparse.ArgumentParser(description="Publish an order event to a Kafka topic.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default=PAYMENTS_CONFIRMED)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON envelope")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON envelope file")
    parser.add_argument("--order-id", default=None, help="Build a payments.confirmed envelope for this order")
    parser.add_argument("--provider", default="crypto", choices=["card", "crypto"])
    parser.add_argument("--provider-ref", default=None)
    parser.add_argument("--amount", default="0.00")
    parser.add_argument("--event-id", default=None, help="Reuse an event id to exercise inbox dedupe")
    args = parser.parse_args()

    sources = [bool(args.json_inline), bool(args.json_file), bool(args.order_id)]
    if sum(sources) != 1:
        raise SystemExit("Provide exactly one of --json, --file or --order-id")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    elif args.json_file:
        payload = json.loads(Path(args.json_file).read_text())
    else:
        if not args.provider_ref:
            raise SystemExit("--provider-ref is required with --order-id")
        payload = payment_confirmed(args.order_id, args.provider, args.provider_ref, args.amount, args.event_id)

    asyncio.run(publish(args.bootstrap_servers, args.topic, payload))
    print(f"Published to topic={args.topic} order_id={payload.get('aggregate_id')}")


if __name__ == "__main__":
    main()
