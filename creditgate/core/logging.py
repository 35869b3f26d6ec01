from __future__ import annotations

import logging

from creditgate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply the configured level once; repeated app factories reuse the root handler.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep httpx request lines out of INFO logs; they can carry upstream URLs with tokens.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
