#!/usr/bin/env python3
"""
Concurrency check for POST /api/claim.

Fires N simultaneous claims for the same coupon at a running service and
checks that exactly one succeeds while the rest are rejected with
409 COUPON_ALREADY_CLAIMED.

Usage:
    python scripts/claim_concurrency_check.py <base_url> <widget_session_token> <coupon_id> [num_requests]

Example:
    python scripts/claim_concurrency_check.py http://localhost:8000 eyJhbGciOi... 0b6f...e1 20
"""

import asyncio
import sys
import time
from collections import Counter
from typing import Any

import httpx


async def make_claim_request(
    client: httpx.AsyncClient,
    request_id: int,
    token: str,
    coupon_id: str,
) -> dict[str, Any]:
    start = time.monotonic()
    try:
        response = await client.post(
            "/api/claim",
            json={"coupon_id": coupon_id},
            headers={"Authorization": f"Bearer {token}"},
        )
        body = response.json()
        return {
            "request_id": request_id,
            "status": response.status_code,
            "code": body.get("code"),
            "coupon_code": body.get("coupon_code"),
            "duration_ms": round((time.monotonic() - start) * 1000),
        }
    except httpx.HTTPError as e:
        return {
            "request_id": request_id,
            "status": "ERROR",
            "code": type(e).__name__,
            "coupon_code": None,
            "duration_ms": round((time.monotonic() - start) * 1000),
        }


async def run_check(base_url: str, token: str, coupon_id: str, num_requests: int) -> bool:
    print("=" * 60)
    print("Concurrency check for POST /api/claim")
    print("=" * 60)
    print(f"Base URL: {base_url}")
    print(f"Coupon ID: {coupon_id}")
    print(f"Concurrent requests: {num_requests}")
    print("=" * 60)

    limits = httpx.Limits(max_connections=num_requests)
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0, limits=limits) as client:
        results = await asyncio.gather(
            *(make_claim_request(client, i + 1, token, coupon_id) for i in range(num_requests))
        )

    for result in sorted(results, key=lambda r: r["request_id"]):
        print(
            f"  #{result['request_id']:>3}  status={result['status']}  "
            f"code={result['code'] or '-'}  {result['duration_ms']}ms"
        )

    statuses = Counter(result["status"] for result in results)
    successes = statuses.get(200, 0)
    conflicts = sum(
        1 for result in results if result["status"] == 409 and result["code"] == "COUPON_ALREADY_CLAIMED"
    )

    print("-" * 60)
    print(f"200 OK:                        {successes}")
    print(f"409 COUPON_ALREADY_CLAIMED:    {conflicts}")
    print(f"Other:                         {num_requests - successes - conflicts}")

    passed = successes == 1 and conflicts == num_requests - 1
    print("✓ Exactly one claim succeeded" if passed else "✗ Claim was not exactly-once")
    return passed


def main() -> None:
    if len(sys.argv) < 4:
        print(__doc__, file=sys.stderr)
        sys.exit(2)

    base_url, token, coupon_id = sys.argv[1:4]
    num_requests = int(sys.argv[4]) if len(sys.argv) > 4 else 5

    passed = asyncio.run(run_check(base_url, token, coupon_id, num_requests))
    sys.exit(0 if passed else 1)


if __name__ == "__main__":
    main()
