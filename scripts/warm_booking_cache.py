#!/usr/bin/env python3
"""
Warm the booking service catalog cache from a workstation or CI job.

Calls the running service's cache warm endpoint, optionally for a single
category, and can rebuild the local pickup index in the same run.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import httpx


def warm(
    *,
    base_url: str,
    category_id: Optional[int],
    refresh_pickups: bool,
    timeout: float,
) -> Dict[str, Any]:
    """Execute cache warming and return the combined summary."""
    summary: Dict[str, Any] = {}
    params = {"categoryId": category_id} if category_id is not None else None

    with httpx.Client(base_url=base_url, timeout=timeout) as client:
        response = client.post("/api/cache/warm", params=params)
        response.raise_for_status()
        summary["warm"] = response.json()

        if refresh_pickups:
            response = client.post("/api/pickup-details/refresh")
            response.raise_for_status()
            summary["pickups"] = response.json()

        response = client.get("/api/cache/warm", params={"health": "true"})
        response.raise_for_status()
        summary["health"] = response.json()

    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the booking service catalog cache.")
    parser.add_argument("--base-url", default=os.getenv("BOOKING_SERVICE_URL", "http://localhost:8080"), help="Booking service URL")
    parser.add_argument("--category", type=int, default=None, help="Warm a single category instead of the popular list")
    parser.add_argument("--refresh-pickups", action="store_true", help="Rebuild the local pickup index as well")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        summary = warm(
            base_url=args.base_url,
            category_id=args.category,
            refresh_pickups=args.refresh_pickups,
            timeout=args.timeout,
        )
    except KeyboardInterrupt:
        return 130
    except httpx.HTTPError as exc:
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
