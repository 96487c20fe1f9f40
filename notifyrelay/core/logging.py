from __future__ import annotations

import logging

from notifyrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process so workers and scripts share one format.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("notifyrelay").setLevel(resolved)
    # Keep SQL echo and HTTP client chatter out of worker logs unless debugging.
    if resolved != "DEBUG":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
