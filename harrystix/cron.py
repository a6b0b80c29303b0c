#!/usr/bin/env python3
"""
Harry's Tix fulfillment invoker

Stands in for a platform scheduler: POSTs /api/cron/fulfillment-tick on a
fixed cadence. The server decides whether the tick falls inside the weekly
window, so calling it every minute is safe.

Usage:
  python -m harrystix.cron --base http://localhost:8000 --once
  python -m harrystix.cron --base http://localhost:8000 --interval 60

Env:
  CRON_SECRET   shared secret, must match the server's
"""

import asyncio
import argparse
import os
from typing import Optional

import httpx


async def tick(client: httpx.AsyncClient, base: str, secret: str) -> dict:
    r = await client.post(
        f"{base.rstrip('/')}/api/cron/fulfillment-tick",
        headers={"x-cron-secret": secret},
    )
    r.raise_for_status()
    return r.json()


async def run(base: str, secret: str, interval: Optional[float],
              timeout: float) -> int:
    async with httpx.AsyncClient(timeout=timeout) as client:
        while True:
            try:
                out = await tick(client, base, secret)
            except httpx.HTTPError as e:
                print(f"tick failed: {e}")
                if interval is None:
                    return 1
            else:
                if out.get("ran"):
                    print(f"fulfillment ran: {len(out['results'])} item(s)")
                    for item in out["results"]:
                        print(f"  {item['pre_order_id']}: {item['status']}"
                              f" {item.get('error', '')}".rstrip())
                else:
                    print("outside fulfillment window")
            if interval is None:
                return 0
            await asyncio.sleep(interval)


def main():
    ap = argparse.ArgumentParser(description="Harry's Tix fulfillment tick")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--once", action="store_true",
                    help="Send a single tick and exit")
    ap.add_argument("--interval", type=float, default=60.0,
                    help="Seconds between ticks")
    ap.add_argument("--timeout", type=float, default=120.0,
                    help="HTTP timeout; a tick can run the whole batch")
    ap.add_argument("--secret", default=os.environ.get(
                        "CRON_SECRET", "dev-cron-secret"),
                    help="Shared cron secret")
    args = ap.parse_args()

    raise SystemExit(asyncio.run(run(
        base=args.base,
        secret=args.secret,
        interval=None if args.once else args.interval,
        timeout=args.timeout,
    )))


if __name__ == "__main__":
    main()
