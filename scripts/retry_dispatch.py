"""List dispatch_failed orders or trigger a manual retry through the ops API."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for manual dispatch recovery."""

    parser = argparse.ArgumentParser(description="Inspect or retry failed order dispatches.")
    parser.add_argument("--fulfillment-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--order-id", default=None, help="Retry this order; omit to list failures")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.order_id:
        resp = httpx.post(f"{args.fulfillment_url}/ops/orders/{args.order_id}/retry", headers=headers, timeout=60.0)
    else:
        resp = httpx.get(
            f"{args.fulfillment_url}/ops/orders",
            params={"state": "dispatch_failed", "limit": args.limit},
            headers=headers,
            timeout=10.0,
        )
    if resp.status_code >= 400:
        raise SystemExit(f"request failed status={resp.status_code} body={resp.text}")
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
