from __future__ import annotations

import argparse
import asyncio

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import init_models
from notifyrelay.workers.retry_worker import run_retry_loop


async def _main(init_db: bool) -> None:
    # Run the retry scan on a fixed interval without Redis; use `arq` with WorkerSettings otherwise.
    configure_logging()
    if init_db:
        await init_models()
    await run_retry_loop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the standalone notification retry loop.")
    parser.add_argument("--init-db", action="store_true", help="Create missing tables before starting")
    asyncio.run(_main(parser.parse_args().init_db))
