from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

from storefront.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None, json: bool | None = None) -> None:
    """Install a single stream handler on the ``storefront`` logger tree."""
    logger = logging.getLogger("storefront")
    if logger.handlers:
        return

    use_json = settings.LOG_JSON if json is None else json
    h = logging.StreamHandler()
    if use_json:
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    else:
        h.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(h)
    logger.setLevel((level or settings.LOG_LEVEL).upper())
