"""
Process-wide logging setup.

Every module logs through ``logging.getLogger(__name__)`` with
``"Event | key=value"`` messages; this module only installs the root handler
once, for the API process, the pipeline worker, and the Celery beat worker.
"""

from __future__ import annotations

import logging

from docflow.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "PIL", "asyncio")

_configured = False


def configure_logging(settings: Settings) -> None:
    """Install the root handler. Safe to call more than once."""
    global _configured
    if _configured:
        return
    _configured = True

    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
