#!/usr/bin/env python3
"""Report WhatsApp Business account status for sends that succeed but never arrive."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from events_web.account_check import fetch_account_status
from events_web.config import get_settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--phone-number-id", help="Override WA_PHONE_NUMBER_ID")
    parser.add_argument("--api-version", help="Override WA_API_VERSION")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    if args.phone_number_id:
        settings = replace(settings, wa_phone_number_id=args.phone_number_id)
    if args.api_version:
        settings = replace(settings, wa_api_version=args.api_version)

    try:
        health = asyncio.run(fetch_account_status(settings))
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except httpx.HTTPStatusError as exc:
        print(f"ERROR: provider returned {exc.response.status_code}: {exc.response.text}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"ERROR: could not reach provider: {exc}", file=sys.stderr)
        return 1

    print(f"Phone number:    {health.display_phone_number or '-'}")
    print(f"Verified name:   {health.verified_name or '-'}")
    print(f"Quality rating:  {health.quality_rating or '-'}")
    print(f"Messaging tier:  {health.messaging_limit_tier or '-'}")
    if health.healthy:
        print("\nNo account problems detected.")
        return 0

    print("\nProblems:")
    for problem in health.problems:
        print(f"  - {problem}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
