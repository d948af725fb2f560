"""Replay one signed NOWPayments IPN many times concurrently.

Exercises idempotent dispatch end to end: however many copies arrive, the
order should reach `fulfilled` with one upstream order id.
"""

import argparse
import asyncio
import json
import statistics
import time
from collections import Counter

import httpx

from getfame.services.payments.signatures import sign_ipn


async def send_one(client: httpx.AsyncClient, url: str, body: bytes, signature: str):
    """Send one IPN and return (status_code, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            url,
            content=body,
            headers={"content-type": "application/json", "x-nowpayments-sig": signature},
        )
        return resp.status_code, (time.perf_counter() - started) * 1000
    except httpx.HTTPError:
        return 599, (time.perf_counter() - started) * 1000


async def run(args) -> None:
    """Fire the storm, then poll the order until it settles."""

    body = json.dumps(
        {
            "invoice_id": args.invoice_id,
            "order_id": args.order_id,
            "payment_status": "finished",
            "price_amount": args.amount,
            "price_currency": "usd",
            "pay_currency": "btc",
        }
    ).encode("utf-8")
    signature = sign_ipn(body, args.ipn_secret)
    url = f"{args.base_url}/api/webhooks/nowpayments"
    sem = asyncio.Semaphore(args.concurrency)

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker():
            async with sem:
                return await send_one(client, url, body, signature)

        results = await asyncio.gather(*(worker() for _ in range(args.total)))
        codes = Counter(code for code, _ in results)
        lats = [latency for _, latency in results]
        print(f"total={args.total}")
        print(f"status_codes={dict(codes)}")
        print(f"avg_ms={statistics.mean(lats):.2f}")

        deadline = time.monotonic() + args.wait_seconds
        while time.monotonic() < deadline:
            resp = await client.get(f"{args.base_url}/api/order/{args.order_id}")
            if resp.status_code == 200 and resp.json()["state"] in ("fulfilled", "dispatch_failed"):
                break
            await asyncio.sleep(0.5)
        print(f"order={resp.text}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--invoice-id", required=True, type=int)
    parser.add_argument("--amount", type=float, required=True)
    parser.add_argument("--ipn-secret", required=True)
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--wait-seconds", type=float, default=30.0)
    parser.add_argument("--base-url", default="http://localhost:8000")
    asyncio.run(run(parser.parse_args()))
