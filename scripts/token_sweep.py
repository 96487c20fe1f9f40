from __future__ import annotations

import argparse
import asyncio
import json

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.providers.delivery.factory import get_delivery_provider
from notifyrelay.services.token_cleanup import cleanup_tokens_by_error_pattern, token_cleanup_statistics


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sweep device tokens whose deactivation reason matches a pattern.")
    parser.add_argument("--pattern", help="Case-insensitive regex matched against deactivation reasons")
    parser.add_argument("--days-old", type=int, default=7, help="Only consider tokens updated in this window")
    parser.add_argument("--stats", action="store_true", help="Print token statistics instead of sweeping")
    return parser


async def _run(args: argparse.Namespace) -> dict:
    async with SessionLocal() as session:
        if args.stats or not args.pattern:
            return await token_cleanup_statistics(session)
        provider = get_delivery_provider()
        try:
            return await cleanup_tokens_by_error_pattern(session, provider, args.pattern, days_old=args.days_old)
        finally:
            aclose = getattr(provider, "aclose", None)
            if aclose is not None:
                await aclose()


if __name__ == "__main__":
    configure_logging()
    print(json.dumps(asyncio.run(_run(_build_parser().parse_args())), indent=2, default=str))
